"""
Transaction phase builder.

Builds the three unsigned transactions that settle one invoice through the
payer's multisig vault:

    Create          vault_transaction_create holding the compiled transfer
                    (plus the flat fee transfer on the batch's first invoice)
                    and the audit memo
    ProposeApprove  proposal_create + proposal_approve by the same member
    Execute         vault_transaction_execute with accounts derived from
                    current ledger state

Every phase names the custodial fee payer at account index 0 and requires
the member wallet's signature. Account resolution failures raise BuildError
before any signature is requested.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Optional, Sequence, TypeVar

from .constants import AuditConfig, Programs
from .exceptions import BuildError, RPCError, TransactionDecodeError
from .keys import Pubkey
from .ledger import describe_account
from .models import AccountRef, PaymentBatch, TokenType, TransactionPhase
from .multisig import (
    MultisigAccount,
    Permission,
    VaultTransactionMessage,
    accounts_for_execute,
    associated_token_address,
    proposal_approve,
    proposal_create,
    vault_pda,
    vault_transaction_create,
    vault_transaction_execute,
)
from .ports import LedgerClient
from .transactions import Instruction, Transaction, memo_instruction, token_transfer

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class InvoicePlan:
    """Resolved accounts and amounts for one invoice's three phases."""

    batch_id: str
    invoice_index: int
    invoice_number: str
    token: TokenType
    amount_minor: int
    fee_minor: int
    memo: str
    member: Pubkey
    multisig: Pubkey
    vault: Pubkey
    payer_token_account: Pubkey
    payee_multisig: Pubkey
    payee_vault: Pubkey
    payee_token_account: Pubkey
    fee_token_account: Optional[Pubkey]
    transaction_index: int


@dataclass(frozen=True)
class UnsignedPhase:
    """A phase transaction awaiting the wallet signature."""

    phase: TransactionPhase
    invoice_index: int
    invoice_number: str
    transaction_index: int
    transaction: Transaction
    fee_payer: Pubkey
    required_signers: tuple[Pubkey, ...]

    def serialize(self) -> bytes:
        return self.transaction.serialize()


class PhaseBuilder:
    """Builds unsigned phase transactions against live ledger state."""

    def __init__(
        self,
        ledger: LedgerClient,
        fee_payer: Pubkey,
        fee_collector: Optional[Pubkey] = None,
    ) -> None:
        self._ledger = ledger
        self._fee_payer = fee_payer
        self._fee_collector = fee_collector

    @property
    def fee_payer(self) -> Pubkey:
        return self._fee_payer

    async def prepare_invoice(
        self,
        batch: PaymentBatch,
        invoice_index: int,
        payee: AccountRef,
        member: Pubkey,
        memo: str,
    ) -> InvoicePlan:
        """Resolve every account the invoice touches and reserve its index.

        Raises:
            BuildError: payer multisig unresolvable, wallet not a member,
                payee without a settlement account, or missing fee collector
        """
        invoice = batch.invoices[invoice_index]
        token = batch.currency
        multisig = batch.payer_account.pubkey

        account = await self._load_multisig(multisig, "Payer")
        member_entry = account.member(member)
        if member_entry is None:
            raise BuildError(
                f"Wallet {member} is not a member of payer multisig {multisig}",
                details={"multisig": str(multisig), "member": str(member)},
            )
        if not member_entry.permissions & Permission.INITIATE:
            raise BuildError(f"Wallet {member} cannot initiate multisig transactions")

        try:
            payee_multisig = payee.pubkey
            await self._load_multisig(payee_multisig, "Payee")
        except BuildError as e:
            raise BuildError(
                "Payee has no valid settlement address",
                details={"payee": payee.address, "reason": e.message},
            ) from e

        vault = vault_pda(multisig)
        payer_token_account = associated_token_address(vault, token.mint)
        await self._require_account(payer_token_account, f"Payer vault has no {token.value} account")

        payee_vault = vault_pda(payee_multisig)
        payee_token_account = associated_token_address(payee_vault, token.mint)
        await self._require_account(
            payee_token_account, f"Payee vault has no {token.value} settlement account"
        )

        fee_minor = 0
        fee_token_account = None
        if invoice_index == 0 and batch.total_fee > 0:
            if self._fee_collector is None:
                raise BuildError("Fee collector wallet is not configured")
            fee_token_account = associated_token_address(self._fee_collector, token.mint)
            await self._require_account(
                fee_token_account, f"Fee collector has no {token.value} account"
            )
            fee_minor = token.to_minor_units(batch.total_fee, "total_fee")

        counter = await self._read(
            self._ledger.get_sequence_counter(str(multisig)), "sequence counter"
        )
        plan = InvoicePlan(
            batch_id=batch.batch_id,
            invoice_index=invoice_index,
            invoice_number=invoice.number,
            token=token,
            amount_minor=token.to_minor_units(invoice.amount),
            fee_minor=fee_minor,
            memo=memo,
            member=member,
            multisig=multisig,
            vault=vault,
            payer_token_account=payer_token_account,
            payee_multisig=payee_multisig,
            payee_vault=payee_vault,
            payee_token_account=payee_token_account,
            fee_token_account=fee_token_account,
            transaction_index=counter + 1,
        )
        logger.info(
            f"Prepared invoice {invoice.number} at transaction index {plan.transaction_index}",
            extra={
                "batch_id": batch.batch_id,
                "multisig": str(multisig),
                "amount_minor": plan.amount_minor,
                "fee_minor": fee_minor,
            },
        )
        return plan

    async def build_create(self, plan: InvoicePlan) -> UnsignedPhase:
        message = VaultTransactionMessage.compile(plan.vault, self._vault_instructions(plan))
        instruction = vault_transaction_create(
            plan.multisig,
            plan.transaction_index,
            creator=plan.member,
            message=message,
            memo=f"{AuditConfig.VAULT_MEMO_PREFIX}{plan.invoice_number}",
        )
        return await self._assemble(TransactionPhase.CREATE, plan, [instruction])

    async def build_propose_approve(self, plan: InvoicePlan) -> UnsignedPhase:
        await self._require_created(plan)
        instructions = [
            proposal_create(plan.multisig, plan.transaction_index, creator=plan.member),
            proposal_approve(plan.multisig, plan.transaction_index, member=plan.member),
        ]
        return await self._assemble(TransactionPhase.PROPOSE_APPROVE, plan, instructions)

    async def build_execute(self, plan: InvoicePlan) -> UnsignedPhase:
        """Build Execute from current state rather than the Create-time snapshot."""
        await self._require_created(plan)
        token = plan.token
        vault = vault_pda(plan.multisig)
        payer_token_account = associated_token_address(vault, token.mint)
        payee_token_account = associated_token_address(vault_pda(plan.payee_multisig), token.mint)
        await self._require_account(payer_token_account, f"Payer vault has no {token.value} account")
        await self._require_account(
            payee_token_account, f"Payee vault has no {token.value} settlement account"
        )
        if (vault, payer_token_account, payee_token_account) != (
            plan.vault,
            plan.payer_token_account,
            plan.payee_token_account,
        ):
            raise BuildError("Derived settlement accounts changed since Create")

        message = VaultTransactionMessage.compile(vault, self._vault_instructions(plan))
        instruction = vault_transaction_execute(
            plan.multisig,
            plan.transaction_index,
            member=plan.member,
            remaining_accounts=accounts_for_execute(message, vault),
        )
        return await self._assemble(TransactionPhase.EXECUTE, plan, [instruction])

    # ------------------------------------------------------------------

    def _vault_instructions(self, plan: InvoicePlan) -> list[Instruction]:
        instructions = []
        if plan.fee_minor and plan.fee_token_account is not None:
            instructions.append(
                token_transfer(
                    plan.payer_token_account,
                    plan.fee_token_account,
                    plan.vault,
                    plan.fee_minor,
                )
            )
        instructions.append(
            token_transfer(
                plan.payer_token_account,
                plan.payee_token_account,
                plan.vault,
                plan.amount_minor,
            )
        )
        instructions.append(memo_instruction(plan.memo))
        return instructions

    async def _assemble(
        self,
        phase: TransactionPhase,
        plan: InvoicePlan,
        instructions: Sequence[Instruction],
    ) -> UnsignedPhase:
        blockhash = await self._read(self._ledger.get_latest_blockhash(), "latest blockhash")
        transaction = Transaction.new(self._fee_payer, instructions, blockhash)
        logger.debug(
            f"Built {phase.value} for invoice {plan.invoice_number}",
            extra={"accounts": len(transaction.message.account_keys)},
        )
        return UnsignedPhase(
            phase=phase,
            invoice_index=plan.invoice_index,
            invoice_number=plan.invoice_number,
            transaction_index=plan.transaction_index,
            transaction=transaction,
            fee_payer=self._fee_payer,
            required_signers=transaction.message.signer_keys,
        )

    async def _read(self, query: Awaitable[T], what: str) -> T:
        """Await a ledger read, reporting RPC failures as build failures."""
        try:
            return await query
        except RPCError as e:
            raise BuildError(
                f"Could not resolve {what}: {e.message}", details={"cause": e.to_dict()}
            ) from e

    async def _load_multisig(self, address: Pubkey, role: str) -> MultisigAccount:
        state = await self._read(self._ledger.resolve_account(str(address)), f"account {address}")
        if not state.exists:
            raise BuildError(f"{role} multisig {address} not found")
        if state.owner != Programs.MULTISIG:
            raise BuildError(
                f"{role} account {address} is not a multisig account",
                details={"account": describe_account(state)},
            )
        try:
            return MultisigAccount.decode(state.data)
        except TransactionDecodeError as e:
            raise BuildError(f"{role} multisig {address} could not be decoded: {e.message}") from e

    async def _require_account(self, address: Pubkey, message: str) -> None:
        state = await self._read(self._ledger.resolve_account(str(address)), f"account {address}")
        if not state.exists:
            raise BuildError(message, details={"account": str(address)})

    async def _require_created(self, plan: InvoicePlan) -> None:
        counter = await self._read(
            self._ledger.get_sequence_counter(str(plan.multisig)), "sequence counter"
        )
        if counter < plan.transaction_index:
            raise BuildError(
                f"Vault transaction {plan.transaction_index} for invoice "
                f"{plan.invoice_number} does not exist yet"
            )

"""
Simulated collaborators for development and tests.

SimulatedLedger keeps multisig accounts, token accounts, vault transactions
and proposals in memory and applies the effects of submitted transactions:
signatures are verified, multisig instructions advance the sequence counter
and proposal state, and an executed vault transaction moves token balances.
A transaction whose effects fail leaves the ledger unchanged and reports a
failed status, as the network would.

Submissions and outcomes can be scripted to exercise retry, failure and
timeout paths.
"""
from __future__ import annotations

import asyncio
import copy
import hashlib
import logging
import struct
from collections import deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Callable, Iterable, Mapping, Optional, Union

import base58

from .constants import Programs
from .exceptions import BuildError, RPCError, SubmissionError, TransactionDecodeError, WalletRejected
from .keys import Keypair, Pubkey
from .models import AccountRef, AccountState, SubmissionState, SubmissionStatus
from .multisig import (
    MULTISIG_PROGRAM_ID,
    PROPOSAL_APPROVE,
    PROPOSAL_CREATE,
    VAULT_TRANSACTION_CREATE,
    SEED_MULTISIG,
    SEED_PREFIX,
    VAULT_TRANSACTION_EXECUTE,
    MultisigAccount,
    MultisigMember,
    Permission,
    VaultTransactionMessage,
    associated_token_address,
    decode_vault_instruction,
    find_program_address,
    proposal_pda,
    transaction_pda,
    vault_pda,
)
from .transactions import MEMO_PROGRAM_ID, Instruction, Transaction, describe_transfer

if TYPE_CHECKING:
    from .builder import UnsignedPhase

logger = logging.getLogger(__name__)

OUTCOME_OK = "ok"
OUTCOME_FAIL = "fail"
OUTCOME_HANG = "hang"


class _ExecutionFailed(Exception):
    pass


@dataclass
class TokenAccount:
    mint: Pubkey
    owner: Pubkey
    amount: int = 0

    def encode(self) -> bytes:
        return self.mint.raw + self.owner.raw + struct.pack("<Q", self.amount)


@dataclass
class VaultTransactionRecord:
    multisig: Pubkey
    index: int
    vault_index: int
    creator: Pubkey
    message: VaultTransactionMessage
    memo: Optional[str] = None
    executed: bool = False


@dataclass
class ProposalRecord:
    multisig: Pubkey
    index: int
    status: str = "active"
    approvals: set[Pubkey] = field(default_factory=set)


class SimulatedLedger:
    """In-memory ledger implementing the LedgerClient interface."""

    def __init__(self) -> None:
        self.multisigs: dict[Pubkey, MultisigAccount] = {}
        self.token_accounts: dict[Pubkey, TokenAccount] = {}
        self.vault_transactions: dict[Pubkey, VaultTransactionRecord] = {}
        self.proposals: dict[Pubkey, ProposalRecord] = {}
        self.memos: list[str] = []
        self.submitted: list[Transaction] = []
        self.statuses: dict[str, SubmissionStatus] = {}
        self._pending: dict[str, Transaction] = {}
        self._outcomes: deque[str] = deque()
        self._submission_failures = 0
        self._submission_failures_retryable = True
        self._status_failures = 0
        self._lost_acknowledgements = 0
        self._blockhash_counter = 0

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def create_multisig(
        self,
        members: Iterable[Union[Pubkey, MultisigMember]],
        threshold: int = 1,
        transaction_index: int = 0,
    ) -> Pubkey:
        create_key = Keypair.generate().pubkey
        address, bump = find_program_address(
            [SEED_PREFIX, SEED_MULTISIG, create_key.raw], MULTISIG_PROGRAM_ID
        )
        self.multisigs[address] = MultisigAccount(
            create_key=create_key,
            config_authority=Pubkey(bytes(32)),
            threshold=threshold,
            time_lock=0,
            transaction_index=transaction_index,
            stale_transaction_index=0,
            rent_collector=None,
            bump=bump,
            members=tuple(
                m if isinstance(m, MultisigMember) else MultisigMember(m) for m in members
            ),
        )
        return address

    def create_token_account(self, owner: Pubkey, mint: Pubkey, amount: int = 0) -> Pubkey:
        address = associated_token_address(owner, mint)
        self.token_accounts[address] = TokenAccount(mint, owner, amount)
        return address

    def fund_vault(self, multisig: Pubkey, mint: Pubkey, amount: int = 0) -> Pubkey:
        """Create the vault's token account for ``mint``."""
        return self.create_token_account(vault_pda(multisig), mint, amount)

    def balance(self, token_account: Pubkey) -> int:
        return self.token_accounts[token_account].amount

    def vault_balance(self, multisig: Pubkey, mint: Pubkey) -> int:
        return self.balance(associated_token_address(vault_pda(multisig), mint))

    # ------------------------------------------------------------------
    # Scripting
    # ------------------------------------------------------------------

    def fail_submissions(self, count: int, retryable: bool = True) -> None:
        """Reject the next ``count`` submissions with SubmissionError."""
        self._submission_failures = count
        self._submission_failures_retryable = retryable

    def lose_acknowledgements(self, count: int) -> None:
        """Accept the next ``count`` submissions but fail as if the reply was lost."""
        self._lost_acknowledgements = count

    def fail_status_polls(self, count: int) -> None:
        """Raise RPCError on the next ``count`` status polls."""
        self._status_failures = count

    def script(self, *outcomes: str) -> None:
        """Queue outcomes for the next submissions: "ok", "fail" or "hang"."""
        for outcome in outcomes:
            if outcome not in (OUTCOME_OK, OUTCOME_FAIL, OUTCOME_HANG):
                raise ValueError(f"Unknown outcome {outcome!r}")
            self._outcomes.append(outcome)

    def release_pending(self, submission_id: Optional[str] = None) -> None:
        """Land transactions that were left pending by a "hang" outcome."""
        ids = [submission_id] if submission_id else list(self._pending)
        for sid in ids:
            transaction = self._pending.pop(sid)
            self._land(sid, transaction)

    # ------------------------------------------------------------------
    # LedgerClient
    # ------------------------------------------------------------------

    async def resolve_account(self, address: str) -> AccountState:
        key = Pubkey.from_string(address)
        if key in self.multisigs:
            return AccountState(
                address=address,
                exists=True,
                owner=Programs.MULTISIG,
                lamports=1_000_000,
                data=self.multisigs[key].encode(),
            )
        if key in self.token_accounts:
            return AccountState(
                address=address,
                exists=True,
                owner=Programs.TOKEN,
                lamports=2_039_280,
                data=self.token_accounts[key].encode(),
            )
        return AccountState(address=address, exists=False)

    async def get_sequence_counter(self, multisig_address: str) -> int:
        account = self.multisigs.get(Pubkey.from_string(multisig_address))
        if account is None:
            raise BuildError(f"Multisig {multisig_address} not found")
        return account.transaction_index

    async def get_latest_blockhash(self) -> str:
        self._blockhash_counter += 1
        seed = f"blockhash:{self._blockhash_counter}".encode()
        return base58.b58encode(hashlib.sha256(seed).digest()).decode("ascii")

    async def submit(self, signed_transaction: bytes) -> str:
        if self._submission_failures > 0:
            self._submission_failures -= 1
            raise SubmissionError(
                "Simulated submission failure",
                retryable=self._submission_failures_retryable,
            )
        try:
            transaction = Transaction.deserialize(signed_transaction)
        except TransactionDecodeError as e:
            raise SubmissionError(f"Transaction rejected: {e.message}", retryable=False) from e
        invalid = transaction.invalid_signers()
        if invalid:
            raise SubmissionError(
                "Signature verification failed for " + ", ".join(str(k) for k in invalid),
                retryable=False,
            )
        signature = transaction.signature or ""
        if signature in self.statuses:
            raise SubmissionError(
                "Transaction already processed", retryable=False, already_processed=True
            )

        self.submitted.append(transaction)
        outcome = self._outcomes.popleft() if self._outcomes else OUTCOME_OK
        if outcome == OUTCOME_HANG:
            self.statuses[signature] = SubmissionStatus(SubmissionState.PENDING)
            self._pending[signature] = transaction
        elif outcome == OUTCOME_FAIL:
            self.statuses[signature] = SubmissionStatus(
                SubmissionState.FAILED, error="Simulated execution failure", slot=len(self.submitted)
            )
        else:
            self._land(signature, transaction)
        if self._lost_acknowledgements > 0:
            self._lost_acknowledgements -= 1
            raise SubmissionError("Simulated read timeout", retryable=True)
        return signature

    async def get_status(self, submission_id: str) -> SubmissionStatus:
        if self._status_failures > 0:
            self._status_failures -= 1
            raise RPCError("Simulated status poll failure", method="getSignatureStatuses")
        return self.statuses.get(submission_id, SubmissionStatus(SubmissionState.PENDING))

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    def _land(self, signature: str, transaction: Transaction) -> None:
        snapshot = copy.deepcopy(
            (self.multisigs, self.token_accounts, self.vault_transactions, self.proposals, self.memos)
        )
        slot = len(self.submitted)
        try:
            for instruction in transaction.message.decompile():
                self._apply(instruction)
        except (_ExecutionFailed, TransactionDecodeError) as e:
            (
                self.multisigs,
                self.token_accounts,
                self.vault_transactions,
                self.proposals,
                self.memos,
            ) = snapshot
            logger.info(f"Simulated transaction {signature} failed: {e}")
            self.statuses[signature] = SubmissionStatus(SubmissionState.FAILED, error=str(e), slot=slot)
            return
        self.statuses[signature] = SubmissionStatus(SubmissionState.SUCCESS, slot=slot)

    def _apply(self, instruction: Instruction) -> None:
        decoded = decode_vault_instruction(instruction)
        if decoded is not None:
            handler = {
                VAULT_TRANSACTION_CREATE: self._vault_transaction_create,
                PROPOSAL_CREATE: self._proposal_create,
                PROPOSAL_APPROVE: self._proposal_approve,
                VAULT_TRANSACTION_EXECUTE: self._vault_transaction_execute,
            }[decoded.name]
            handler(decoded.accounts, decoded.args)
            return
        if instruction.program_id == MEMO_PROGRAM_ID:
            self.memos.append(instruction.data.decode("utf-8"))
            return
        movement = describe_transfer(instruction)
        if movement is not None and movement.kind.startswith("token_transfer"):
            if not any(m.pubkey == movement.authority and m.is_signer for m in instruction.accounts):
                raise _ExecutionFailed("Transfer authority did not sign")
            self._move(movement.source, movement.destination, movement.authority, movement.amount)
            return
        raise _ExecutionFailed(f"Unsupported program {instruction.program_id}")

    def _multisig(self, address: Pubkey) -> MultisigAccount:
        account = self.multisigs.get(address)
        if account is None:
            raise _ExecutionFailed(f"Multisig {address} not found")
        return account

    def _require_member(self, account: MultisigAccount, key: Pubkey, permission: int) -> None:
        member = account.member(key)
        if member is None or not member.permissions & permission:
            raise _ExecutionFailed(f"{key} lacks permission {permission}")

    def _vault_transaction_create(self, accounts, args) -> None:
        multisig = accounts[0].pubkey
        account = self._multisig(multisig)
        creator = accounts[2].pubkey
        if not accounts[2].is_signer:
            raise _ExecutionFailed("Creator did not sign")
        self._require_member(account, creator, Permission.INITIATE)
        index = account.transaction_index + 1
        if accounts[1].pubkey != transaction_pda(multisig, index):
            raise _ExecutionFailed(f"Transaction account does not match index {index}")
        self.vault_transactions[accounts[1].pubkey] = VaultTransactionRecord(
            multisig=multisig,
            index=index,
            vault_index=args["vault_index"],
            creator=creator,
            message=args["message"],
            memo=args["memo"],
        )
        self.multisigs[multisig] = replace(account, transaction_index=index)

    def _proposal_create(self, accounts, args) -> None:
        multisig = accounts[0].pubkey
        account = self._multisig(multisig)
        index = args["transaction_index"]
        self._require_member(account, accounts[2].pubkey, Permission.INITIATE)
        if transaction_pda(multisig, index) not in self.vault_transactions:
            raise _ExecutionFailed(f"Vault transaction {index} does not exist")
        address = proposal_pda(multisig, index)
        if accounts[1].pubkey != address or address in self.proposals:
            raise _ExecutionFailed(f"Invalid proposal account for index {index}")
        self.proposals[address] = ProposalRecord(
            multisig, index, status="draft" if args["draft"] else "active"
        )

    def _proposal_approve(self, accounts, args) -> None:
        account = self._multisig(accounts[0].pubkey)
        member = accounts[1].pubkey
        if not accounts[1].is_signer:
            raise _ExecutionFailed("Approver did not sign")
        self._require_member(account, member, Permission.VOTE)
        proposal = self.proposals.get(accounts[2].pubkey)
        if proposal is None or proposal.status not in ("active", "approved"):
            raise _ExecutionFailed("Proposal is not open for voting")
        proposal.approvals.add(member)
        if len(proposal.approvals) >= account.threshold:
            proposal.status = "approved"

    def _vault_transaction_execute(self, accounts, args) -> None:
        multisig = accounts[0].pubkey
        account = self._multisig(multisig)
        self._require_member(account, accounts[3].pubkey, Permission.EXECUTE)
        proposal = self.proposals.get(accounts[1].pubkey)
        if proposal is None or proposal.status != "approved":
            raise _ExecutionFailed("Proposal is not approved")
        record = self.vault_transactions.get(accounts[2].pubkey)
        if record is None or record.index != proposal.index or record.executed:
            raise _ExecutionFailed("Vault transaction is not executable")

        vault = vault_pda(multisig, record.vault_index)
        passed = {meta.pubkey for meta in accounts[4:]}
        missing = [key for key in record.message.account_keys if key not in passed]
        if missing:
            raise _ExecutionFailed(f"Execute is missing accounts: {missing}")

        for inner in record.message.decompile():
            if inner.program_id == MEMO_PROGRAM_ID:
                self.memos.append(inner.data.decode("utf-8"))
                continue
            movement = describe_transfer(inner)
            if movement is None or not movement.kind.startswith("token_transfer"):
                raise _ExecutionFailed(f"Unsupported vault instruction for {inner.program_id}")
            if movement.authority != vault:
                raise _ExecutionFailed("Vault instruction is not authorized by the vault")
            self._move(movement.source, movement.destination, movement.authority, movement.amount)

        record.executed = True
        proposal.status = "executed"

    def _move(self, source: Pubkey, destination: Pubkey, authority: Pubkey, amount: int) -> None:
        src = self.token_accounts.get(source)
        dst = self.token_accounts.get(destination)
        if src is None or dst is None:
            raise _ExecutionFailed("Token account not found")
        if src.owner != authority:
            raise _ExecutionFailed("Owner does not match")
        if src.mint != dst.mint:
            raise _ExecutionFailed("Account mint mismatch")
        if src.amount < amount:
            raise _ExecutionFailed("Insufficient funds")
        src.amount -= amount
        dst.amount += amount


class SimulatedWallet:
    """Member wallet that signs every phase it is shown.

    ``reject_at`` makes the n-th (0-based) signing request fail with
    WalletRejected. ``hold`` keeps every request waiting until the event is
    set. ``mutate(transaction, phase)`` may replace the transaction before it is
    signed.
    """

    def __init__(
        self,
        keypair: Optional[Keypair] = None,
        *,
        reject_at: Optional[int] = None,
        hold: Optional[asyncio.Event] = None,
        mutate: Optional[Callable[[Transaction, "UnsignedPhase"], Transaction]] = None,
    ) -> None:
        self._keypair = keypair or Keypair.generate()
        self._reject_at = reject_at
        self._hold = hold
        self._mutate = mutate
        self.requests: list["UnsignedPhase"] = []
        self.waiting = asyncio.Event()

    @property
    def public_key(self) -> Pubkey:
        return self._keypair.pubkey

    async def sign(self, phase: "UnsignedPhase") -> Transaction:
        position = len(self.requests)
        self.requests.append(phase)
        self.waiting.set()
        if self._hold is not None:
            await self._hold.wait()
        if self._reject_at is not None and position == self._reject_at:
            raise WalletRejected(f"User declined to sign {phase.phase.value}")
        transaction = phase.transaction.copy()
        if self._mutate is not None:
            transaction = self._mutate(transaction, phase)
        transaction.sign(self._keypair)
        return transaction


class StaticVendorDirectory:
    """Vendor lookup backed by a fixed mapping."""

    def __init__(self, accounts: Optional[Mapping[str, AccountRef]] = None) -> None:
        self._accounts = dict(accounts or {})

    async def get_settlement_account(self, vendor_id: str) -> Optional[AccountRef]:
        return self._accounts.get(vendor_id)

"""
Security validator for sponsored transactions.

The backend co-signs user transactions as fee payer. Before it does, every
request is inspected here; the signer accepts only the ValidatedPayload
this module issues, so there is no path to the custodial key that skips
these checks.

Checks (all are evaluated, every failure is reported):

- INVALID_FEE_PAYER: account key 0 must be the custodial public key
- UNAUTHORIZED_TRANSFER: no token or native transfer may draw on the fee
  payer or its token accounts, including transfers nested inside a vault
  transaction message
- UNAUTHORIZED_FEE_PAYER_USE: instructions may not reference the fee payer
  as an account at all; it pays network fees only
- INVALID_FEE_AMOUNT: the declared flat fee must equal the configured fee
- MISSING_SIGNATURE: every other required signer must already have signed
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from .exceptions import TransactionDecodeError, ValidationRejected
from .keys import Pubkey
from .models import SecurityVerdict, TokenType, TransactionPhase
from .multisig import VAULT_TRANSACTION_CREATE, associated_token_address, decode_vault_instruction
from .transactions import Instruction, Transaction, describe_transfer

logger = logging.getLogger(__name__)


class RejectionReason:
    MALFORMED_TRANSACTION = "MALFORMED_TRANSACTION"
    INVALID_FEE_PAYER = "INVALID_FEE_PAYER"
    UNAUTHORIZED_TRANSFER = "UNAUTHORIZED_TRANSFER"
    UNAUTHORIZED_FEE_PAYER_USE = "UNAUTHORIZED_FEE_PAYER_USE"
    INVALID_FEE_AMOUNT = "INVALID_FEE_AMOUNT"
    MISSING_SIGNATURE = "MISSING_SIGNATURE"


@dataclass(frozen=True)
class SponsorRequest:
    """A client-signed transaction submitted for fee-payer co-signing."""

    serialized_transaction: bytes
    expected_fee_amount: Decimal
    token_mint: str
    organization_id: Optional[str] = None
    phase: Optional[TransactionPhase] = None
    invoice_number: Optional[str] = None


_ISSUER = object()


class ValidatedPayload:
    """Proof that a specific serialized transaction passed validation.

    Only SecurityValidator can construct one.
    """

    __slots__ = ("serialized_transaction", "request", "verdict", "message_digest")

    def __init__(
        self,
        request: SponsorRequest,
        verdict: SecurityVerdict,
        message_digest: str,
        *,
        _issuer: object = None,
    ) -> None:
        if _issuer is not _ISSUER:
            raise TypeError("ValidatedPayload can only be issued by SecurityValidator")
        self.serialized_transaction = request.serialized_transaction
        self.request = request
        self.verdict = verdict
        self.message_digest = message_digest

    def __setattr__(self, name, value):
        if hasattr(self, "message_digest"):
            raise AttributeError("ValidatedPayload is immutable")
        object.__setattr__(self, name, value)

    def __repr__(self) -> str:
        return (
            f"ValidatedPayload(phase={self.request.phase}, "
            f"invoice={self.request.invoice_number}, digest={self.message_digest[:12]})"
        )


class SecurityValidator:
    """Inspects sponsor requests before the custodial key signs them."""

    def __init__(
        self,
        fee_payer: Pubkey,
        configured_fee: Decimal,
        mints: Optional[Iterable[Pubkey]] = None,
    ) -> None:
        self._fee_payer = fee_payer
        self._configured_fee = Decimal(configured_fee)
        mints = list(mints) if mints is not None else [token.mint for token in TokenType]
        self._protected: frozenset[Pubkey] = frozenset(
            [fee_payer] + [associated_token_address(fee_payer, mint) for mint in mints]
        )

    @property
    def protected_accounts(self) -> frozenset[Pubkey]:
        return self._protected

    def inspect(self, request: SponsorRequest) -> SecurityVerdict:
        """Evaluate every check and return a fresh verdict."""
        return self._evaluate(request)[0]

    def validate(self, request: SponsorRequest) -> ValidatedPayload:
        """Issue a ValidatedPayload or raise ValidationRejected."""
        verdict, transaction = self._evaluate(request)
        if not verdict.allowed or transaction is None:
            logger.error(
                f"Rejected sponsor request for invoice {request.invoice_number} "
                f"({request.phase.value if request.phase else '-'}): {'; '.join(verdict.reasons)}",
                extra={
                    "organization_id": request.organization_id,
                    "reasons": list(verdict.reasons),
                },
            )
            raise ValidationRejected(
                verdict.reasons,
                details={
                    "organization_id": request.organization_id,
                    "invoice_number": request.invoice_number,
                    "phase": request.phase.value if request.phase else None,
                },
            )
        digest = hashlib.sha256(transaction.message.serialize()).hexdigest()
        logger.info(
            f"Sponsor request validated for invoice {request.invoice_number}",
            extra={"message_digest": digest},
        )
        return ValidatedPayload(request, verdict, digest, _issuer=_ISSUER)

    # ------------------------------------------------------------------

    def _evaluate(self, request: SponsorRequest) -> tuple[SecurityVerdict, Optional[Transaction]]:
        try:
            transaction = Transaction.deserialize(request.serialized_transaction)
        except TransactionDecodeError as e:
            return (
                SecurityVerdict(False, (f"{RejectionReason.MALFORMED_TRANSACTION}: {e.message}",)),
                None,
            )

        reasons: list[str] = []
        fee_payer = transaction.fee_payer
        if fee_payer != self._fee_payer:
            reasons.append(
                f"{RejectionReason.INVALID_FEE_PAYER}: expected {self._fee_payer}, got {fee_payer}"
            )

        reasons.extend(self._check_fee(request.expected_fee_amount))
        reasons.extend(self._check_instructions(transaction))

        missing = [key for key in transaction.invalid_signers() if key != self._fee_payer]
        if missing:
            reasons.append(
                f"{RejectionReason.MISSING_SIGNATURE}: "
                + ", ".join(str(key) for key in missing)
            )

        return SecurityVerdict(allowed=not reasons, reasons=tuple(reasons)), transaction

    def _check_fee(self, declared) -> list[str]:
        try:
            amount = Decimal(str(declared))
        except InvalidOperation:
            return [f"{RejectionReason.INVALID_FEE_AMOUNT}: {declared!r} is not a number"]
        if amount != self._configured_fee:
            return [
                f"{RejectionReason.INVALID_FEE_AMOUNT}: expected {self._configured_fee}, "
                f"got {amount}"
            ]
        return []

    def _check_instructions(self, transaction: Transaction) -> list[str]:
        reasons: list[str] = []
        for index, instruction in enumerate(transaction.message.decompile()):
            if any(meta.pubkey == self._fee_payer for meta in instruction.accounts):
                reasons.append(
                    f"{RejectionReason.UNAUTHORIZED_FEE_PAYER_USE}: instruction {index} "
                    "references the fee payer account"
                )
            reasons.extend(self._check_transfer(instruction, f"instruction {index}"))

            try:
                decoded = decode_vault_instruction(instruction)
            except TransactionDecodeError as e:
                reasons.append(
                    f"{RejectionReason.MALFORMED_TRANSACTION}: instruction {index}: {e.message}"
                )
                continue
            if decoded is not None and decoded.name == VAULT_TRANSACTION_CREATE:
                inner = decoded.args["message"].decompile()
                for inner_index, inner_ix in enumerate(inner):
                    reasons.extend(
                        self._check_transfer(
                            inner_ix, f"vault instruction {index}.{inner_index}"
                        )
                    )
        return reasons

    def _check_transfer(self, instruction: Instruction, where: str) -> list[str]:
        movement = describe_transfer(instruction)
        if movement is None:
            return []
        if movement.source in self._protected or movement.authority in self._protected:
            return [
                f"{RejectionReason.UNAUTHORIZED_TRANSFER}: {where} moves funds from "
                f"fee payer account {movement.source}"
            ]
        return []

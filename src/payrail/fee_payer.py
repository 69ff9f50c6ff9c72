"""Custodial fee-payer signer."""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from .constants import SignerDefaults
from .exceptions import PayloadAlreadySubmitted, RPCError, SubmissionError, ValidationRejected
from .keys import Keypair, Pubkey
from .models import TransactionPhase
from .ports import LedgerClient
from .retry import RetryConfig, RetryExhausted, retry_async
from .transactions import Transaction
from .validator import RejectionReason, ValidatedPayload

if TYPE_CHECKING:
    from .config import PayrailSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmittedPhase:
    submission_id: str
    phase: Optional[TransactionPhase]
    invoice_number: Optional[str]
    attempts: int = 1
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def submission_retry_config(
    max_retries: int,
    base_delay: float,
    max_delay: float,
) -> RetryConfig:
    return RetryConfig(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        jitter=0.1,
        retryable_exceptions=(SubmissionError, RPCError),
    )


class FeePayerSigner:
    """Counter-signs validated transactions and submits them.

    The keypair stays inside this object: it is never returned, logged or
    serialized. Signing is stateless with respect to the key, so one
    instance can serve concurrent batches. Each distinct message is signed
    at most once.
    """

    def __init__(
        self,
        keypair: Keypair,
        ledger: LedgerClient,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self.__keypair = keypair
        self._ledger = ledger
        self._retry_config = retry_config or submission_retry_config(3, 0.5, 5.0)
        self._signed: OrderedDict[str, str] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: "PayrailSettings", ledger: LedgerClient) -> "FeePayerSigner":
        submission = settings.submission
        return cls(
            settings.fee_payer_keypair(),
            ledger,
            submission_retry_config(
                submission.max_retries, submission.base_delay, submission.max_delay
            ),
        )

    @property
    def public_key(self) -> Pubkey:
        return self.__keypair.pubkey

    def __repr__(self) -> str:
        return f"FeePayerSigner(pubkey={self.public_key})"

    async def sign_and_submit(self, payload: ValidatedPayload) -> SubmittedPhase:
        """Append the fee-payer signature and submit with bounded retries.

        Raises:
            TypeError: payload did not come from the SecurityValidator
            PayloadAlreadySubmitted: this message was already signed
            SubmissionError: submission failed after the retry budget
        """
        if not isinstance(payload, ValidatedPayload):
            raise TypeError("FeePayerSigner only accepts ValidatedPayload")

        request = payload.request
        transaction = Transaction.deserialize(payload.serialized_transaction)
        if transaction.fee_payer != self.public_key:
            raise ValidationRejected(
                [f"{RejectionReason.INVALID_FEE_PAYER}: payload was validated for another key"]
            )

        digest = payload.message_digest
        if digest in self._signed:
            raise PayloadAlreadySubmitted(
                f"Message {digest[:12]} was already signed",
                details={"submission_id": self._signed[digest]},
            )

        transaction.sign(self.__keypair)
        signature = transaction.signature or ""
        self._remember(digest, signature)
        raw = transaction.serialize()

        attempts = 0

        async def _submit() -> str:
            nonlocal attempts
            attempts += 1
            try:
                return await self._ledger.submit(raw)
            except SubmissionError as e:
                if not e.already_processed:
                    raise
                logger.info(f"Ledger already holds transaction {signature}")
                return signature

        phase_name = request.phase.value if request.phase else "transaction"
        try:
            submission_id = await retry_async(_submit, config=self._retry_config)
        except RetryExhausted as e:
            logger.error(
                f"Submission of {phase_name} for invoice {request.invoice_number} "
                f"failed after {attempts} attempts",
                extra={"signature": signature},
            )
            raise self._unacknowledged(
                f"Submission failed after {attempts} attempts: {e.original_exception}",
                signature,
                attempts,
            ) from e.original_exception
        except (SubmissionError, RPCError) as e:
            # Once a retryable attempt failed, the ledger may hold the transaction
            if attempts == 1:
                raise
            raise self._unacknowledged(
                f"Submission failed on attempt {attempts}: {e.message}", signature, attempts
            ) from e

        if submission_id != signature:
            logger.warning(
                f"Ledger returned submission id {submission_id} for signature {signature}"
            )
        logger.info(
            f"Submitted {phase_name} for invoice {request.invoice_number}: {submission_id}",
            extra={"attempts": attempts},
        )
        return SubmittedPhase(
            submission_id=submission_id,
            phase=request.phase,
            invoice_number=request.invoice_number,
            attempts=attempts,
        )

    @staticmethod
    def _unacknowledged(message: str, signature: str, attempts: int) -> SubmissionError:
        """A submission that may have landed even though no attempt was acknowledged."""
        return SubmissionError(
            message,
            retryable=False,
            details={"attempts": attempts, "signature": signature, "may_have_landed": True},
        )

    def _remember(self, digest: str, signature: str) -> None:
        self._signed[digest] = signature
        while len(self._signed) > SignerDefaults.SIGNED_DIGEST_CACHE_SIZE:
            self._signed.popitem(last=False)

"""Unified exception hierarchy for payrail.

All payrail exceptions inherit from PayrailException, enabling:
- Consistent error handling across the orchestration layers
- Structured error payloads with machine-readable codes
- A single retryable flag consulted by the submission retry policy

Usage:
    from payrail.exceptions import PayrailException, ValidationRejected

    try:
        payload = validator.validate(request)
    except ValidationRejected as e:
        logger.error("Sponsor request rejected: %s", e.reasons)

All exceptions have:
- error_code: Machine-readable error code (e.g., "VALIDATION_REJECTED")
- message: Human-readable error message
- details: Optional additional context dictionary
- retryable: Whether the failing operation may be attempted again as-is
- to_dict(): Convert to a serializable error payload
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Sequence, Type

logger = logging.getLogger(__name__)


class PayrailException(Exception):
    """Base exception for all payrail errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "PAYRAIL_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to an error payload."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Input & configuration errors
# =============================================================================

class PayrailValidationError(PayrailException):
    """Malformed batch, invoice or custom field input."""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class PayrailConfigurationError(PayrailException):
    """Missing or invalid runtime configuration."""

    error_code = "CONFIGURATION_ERROR"


class TransactionDecodeError(PayrailException):
    """Serialized transaction bytes could not be parsed."""

    error_code = "TRANSACTION_DECODE_ERROR"


# =============================================================================
# Orchestration errors
# =============================================================================

class BuildError(PayrailException):
    """Account or sequence resolution failed while building a phase.

    Raised before any signature is requested; never retried.
    """

    error_code = "BUILD_ERROR"


class ValidationRejected(PayrailException):
    """A security invariant was violated by a sponsor request.

    Fatal and never retried. Carries every failed check so callers can
    report the specific reason.
    """

    error_code = "VALIDATION_REJECTED"

    def __init__(
        self,
        reasons: Sequence[str],
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.reasons = list(reasons)
        message = "Transaction rejected: " + "; ".join(self.reasons)
        details = dict(details or {})
        details["reasons"] = self.reasons
        super().__init__(message, details=details)


class SubmissionError(PayrailException):
    """Failure submitting a signed transaction.

    ``already_processed`` marks the ledger refusing a transaction it has
    already accepted, which happens when an earlier acknowledgement was lost.
    """

    error_code = "SUBMISSION_ERROR"

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        details: Optional[dict[str, Any]] = None,
        already_processed: bool = False,
    ) -> None:
        super().__init__(message, details=details)
        self.retryable = retryable
        self.already_processed = already_processed


class RPCError(PayrailException):
    """Ledger RPC transport or protocol failure."""

    error_code = "RPC_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if method:
            details["method"] = method
        if code is not None:
            details["code"] = code
        super().__init__(message, details=details)
        self.method = method
        self.code = code


class ConfirmationTimeout(PayrailException):
    """No terminal status was observed within the polling budget.

    The outcome is ambiguous: the transaction may still land. Callers
    should re-check the submission rather than assume funds did not move.
    """

    error_code = "CONFIRMATION_TIMEOUT"

    def __init__(
        self,
        submission_id: str,
        polls: int,
        elapsed_seconds: float,
    ) -> None:
        self.submission_id = submission_id
        self.polls = polls
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            f"Transaction {submission_id} not confirmed after {polls} polls "
            f"({elapsed_seconds:.1f}s)",
            details={
                "submission_id": submission_id,
                "polls": polls,
                "elapsed_seconds": round(elapsed_seconds, 3),
            },
        )


class OnChainFailure(PayrailException):
    """The ledger accepted the transaction but its execution failed."""

    error_code = "ON_CHAIN_FAILURE"

    def __init__(self, submission_id: str, error: str) -> None:
        self.submission_id = submission_id
        self.error = error
        super().__init__(
            f"Transaction {submission_id} failed on-chain: {error}",
            details={"submission_id": submission_id, "error": error},
        )


class WalletRejected(PayrailException):
    """The user declined to sign a phase in their wallet."""

    error_code = "WALLET_REJECTED"


class BatchCancelled(PayrailException):
    """The batch was cancelled before the next phase was submitted."""

    error_code = "BATCH_CANCELLED"


class PayloadAlreadySubmitted(PayrailException):
    """The fee-payer signer already signed this exact message."""

    error_code = "PAYLOAD_ALREADY_SUBMITTED"


class AuditStoreError(PayrailException):
    """The encrypted-record store refused or failed a write."""

    error_code = "AUDIT_STORE_ERROR"


class AuditIntegrityError(PayrailException):
    """An audit record does not match its ledger fingerprint."""

    error_code = "AUDIT_INTEGRITY_ERROR"


# =============================================================================
# Exception registry
# =============================================================================

EXCEPTION_REGISTRY: dict[str, Type[PayrailException]] = {
    "PAYRAIL_ERROR": PayrailException,
    "VALIDATION_ERROR": PayrailValidationError,
    "CONFIGURATION_ERROR": PayrailConfigurationError,
    "TRANSACTION_DECODE_ERROR": TransactionDecodeError,
    "BUILD_ERROR": BuildError,
    "VALIDATION_REJECTED": ValidationRejected,
    "SUBMISSION_ERROR": SubmissionError,
    "RPC_ERROR": RPCError,
    "CONFIRMATION_TIMEOUT": ConfirmationTimeout,
    "ON_CHAIN_FAILURE": OnChainFailure,
    "WALLET_REJECTED": WalletRejected,
    "BATCH_CANCELLED": BatchCancelled,
    "PAYLOAD_ALREADY_SUBMITTED": PayloadAlreadySubmitted,
    "AUDIT_STORE_ERROR": AuditStoreError,
    "AUDIT_INTEGRITY_ERROR": AuditIntegrityError,
}


def get_exception_class(error_code: str) -> Type[PayrailException]:
    """Get the exception class for an error code.

    Args:
        error_code: The error code to look up

    Returns:
        The corresponding exception class, or PayrailException if not found
    """
    return EXCEPTION_REGISTRY.get(error_code, PayrailException)


__all__ = [
    "PayrailException",
    "PayrailValidationError",
    "PayrailConfigurationError",
    "TransactionDecodeError",
    "BuildError",
    "ValidationRejected",
    "SubmissionError",
    "RPCError",
    "ConfirmationTimeout",
    "OnChainFailure",
    "WalletRejected",
    "BatchCancelled",
    "PayloadAlreadySubmitted",
    "AuditStoreError",
    "AuditIntegrityError",
    "EXCEPTION_REGISTRY",
    "get_exception_class",
]

"""Multi-party batch payment execution through multisig vaults."""

from .audit import (
    AuditEncoder,
    AuditRecord,
    PreparedAudit,
    decrypt_comprehensive,
    hash_payload,
    verify_record,
)
from .audit_store_memory import InMemoryAuditRecordStore
from .builder import InvoicePlan, PhaseBuilder, UnsignedPhase
from .config import PayrailSettings, get_settings
from .confirmation import (
    ConfirmationConfig,
    ConfirmationEngine,
    ConfirmationOutcome,
    ConfirmationResult,
)
from .exceptions import (
    AuditIntegrityError,
    AuditStoreError,
    BatchCancelled,
    BuildError,
    ConfirmationTimeout,
    OnChainFailure,
    PayloadAlreadySubmitted,
    PayrailConfigurationError,
    PayrailException,
    PayrailValidationError,
    RPCError,
    SubmissionError,
    TransactionDecodeError,
    ValidationRejected,
    WalletRejected,
)
from .fee_payer import FeePayerSigner, SubmittedPhase
from .keys import Keypair, Pubkey
from .ledger import SolanaLedgerClient
from .models import (
    AccountRef,
    Attachment,
    Invoice,
    PaymentBatch,
    PaymentContext,
    SecurityVerdict,
    TokenType,
    TransactionPhase,
)
from .orchestrator import BatchEvent, BatchExecution, BatchState, PaymentOrchestrator
from .ports import AuditRecordStore, LedgerClient, VendorDirectory, WalletSigner
from .transactions import Transaction
from .validator import SecurityValidator, SponsorRequest, ValidatedPayload

__version__ = "0.1.0"

__all__ = [
    "AuditEncoder",
    "AuditRecord",
    "PreparedAudit",
    "decrypt_comprehensive",
    "hash_payload",
    "verify_record",
    "InMemoryAuditRecordStore",
    "InvoicePlan",
    "PhaseBuilder",
    "UnsignedPhase",
    "PayrailSettings",
    "get_settings",
    "ConfirmationConfig",
    "ConfirmationEngine",
    "ConfirmationOutcome",
    "ConfirmationResult",
    "AuditIntegrityError",
    "AuditStoreError",
    "BatchCancelled",
    "BuildError",
    "ConfirmationTimeout",
    "OnChainFailure",
    "PayloadAlreadySubmitted",
    "PayrailConfigurationError",
    "PayrailException",
    "PayrailValidationError",
    "RPCError",
    "SubmissionError",
    "TransactionDecodeError",
    "ValidationRejected",
    "WalletRejected",
    "FeePayerSigner",
    "SubmittedPhase",
    "Keypair",
    "Pubkey",
    "SolanaLedgerClient",
    "AccountRef",
    "Attachment",
    "Invoice",
    "PaymentBatch",
    "PaymentContext",
    "SecurityVerdict",
    "TokenType",
    "TransactionPhase",
    "BatchEvent",
    "BatchExecution",
    "BatchState",
    "PaymentOrchestrator",
    "AuditRecordStore",
    "LedgerClient",
    "VendorDirectory",
    "WalletSigner",
    "Transaction",
    "SecurityValidator",
    "SponsorRequest",
    "ValidatedPayload",
]

"""Domain models for batch payment execution."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping, Optional, Union

from .constants import AuditConfig, TOKEN_DECIMALS, TokenMints
from .exceptions import PayrailValidationError
from .keys import Pubkey, is_valid_address


class TokenType(str, Enum):
    """Supported settlement stablecoins."""

    USDC = "USDC"
    USDT = "USDT"
    EURC = "EURC"

    @property
    def mint(self) -> Pubkey:
        return Pubkey.from_string(getattr(TokenMints, self.value))

    @property
    def decimals(self) -> int:
        return TOKEN_DECIMALS[getattr(TokenMints, self.value)]

    def to_minor_units(self, amount: Decimal, field_name: str = "amount") -> int:
        """Convert a token amount to integer minor units, refusing rounding."""
        try:
            scaled = Decimal(amount).scaleb(self.decimals)
        except InvalidOperation as e:
            raise PayrailValidationError(f"Invalid {field_name}: {amount!r}", field=field_name) from e
        if scaled != scaled.to_integral_value():
            raise PayrailValidationError(
                f"{field_name} {amount} has more than {self.decimals} decimal places",
                field=field_name,
            )
        return int(scaled)


class TransactionPhase(str, Enum):
    """The three ordered ledger transactions that settle one invoice."""

    CREATE = "create"
    PROPOSE_APPROVE = "propose_approve"
    EXECUTE = "execute"


PHASE_ORDER: tuple[TransactionPhase, ...] = (
    TransactionPhase.CREATE,
    TransactionPhase.PROPOSE_APPROVE,
    TransactionPhase.EXECUTE,
)


@dataclass(frozen=True)
class AccountRef:
    """Reference to an organization's multisig account."""

    address: str
    organization_id: Optional[str] = None
    label: Optional[str] = None

    def __post_init__(self) -> None:
        if not is_valid_address(self.address):
            raise PayrailValidationError(
                f"Invalid account address: {self.address!r}", field="address"
            )

    @property
    def pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.address)


@dataclass(frozen=True)
class Attachment:
    name: str
    content: bytes = field(repr=False)


@dataclass(frozen=True)
class Invoice:
    """An approved invoice. Immutable once placed in a batch."""

    number: str
    amount: Decimal
    attachments: tuple[Attachment, ...] = ()
    attachment_digests: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.number or len(self.number) > AuditConfig.MAX_INVOICE_NUMBER_LENGTH:
            raise PayrailValidationError(
                "Invoice number must be 1-"
                f"{AuditConfig.MAX_INVOICE_NUMBER_LENGTH} characters",
                field="number",
            )
        try:
            amount = Decimal(str(self.amount)) if not isinstance(self.amount, Decimal) else self.amount
        except InvalidOperation as e:
            raise PayrailValidationError(f"Invalid amount for invoice {self.number}", field="amount") from e
        if not amount.is_finite() or amount <= 0:
            raise PayrailValidationError(
                f"Invoice {self.number} amount must be positive", field="amount"
            )
        object.__setattr__(self, "amount", amount)
        object.__setattr__(self, "attachments", tuple(self.attachments))
        object.__setattr__(self, "attachment_digests", tuple(self.attachment_digests))
        for digest in self.attachment_digests:
            if len(digest) != AuditConfig.HASH_HEX_LENGTH:
                raise PayrailValidationError(
                    f"Attachment digest must be {AuditConfig.HASH_HEX_LENGTH} hex characters",
                    field="attachment_digests",
                )


# =============================================================================
# Custom fields
# =============================================================================

CustomValue = Union[str, Decimal, int, bool, datetime]


def encode_custom_value(value: CustomValue) -> dict[str, Any]:
    """Tag a custom field value so it serializes deterministically.

    Floats are refused: their binary representation does not round-trip
    through a decimal audit record.
    """
    if isinstance(value, bool):
        return {"type": "boolean", "value": value}
    if isinstance(value, str):
        return {"type": "string", "value": value}
    if isinstance(value, (int, Decimal)):
        number = Decimal(value)
        if not number.is_finite():
            raise PayrailValidationError("Custom number must be finite", field="custom_fields")
        return {"type": "number", "value": format(number.normalize(), "f")}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {"type": "timestamp", "value": value.astimezone(timezone.utc).isoformat()}
    raise PayrailValidationError(
        f"Unsupported custom field type: {type(value).__name__}", field="custom_fields"
    )


@dataclass(frozen=True)
class PaymentContext:
    """Full payment context captured in the encrypted audit record."""

    payer_organization_id: Optional[str] = None
    payee_vendor_id: Optional[str] = None
    payment_method: str = "multisig"
    notes: Optional[str] = None
    custom_fields: Mapping[str, CustomValue] = field(default_factory=dict)
    payment_date: Optional[date] = None

    def __post_init__(self) -> None:
        # Fail fast on unsupported custom field values
        for key, value in self.custom_fields.items():
            if not isinstance(key, str):
                raise PayrailValidationError("Custom field names must be strings", field="custom_fields")
            encode_custom_value(value)


@dataclass(frozen=True)
class PaymentBatch:
    """A user-initiated payment of one or more invoices."""

    invoices: tuple[Invoice, ...]
    currency: TokenType
    payer_account: AccountRef
    payee_account: Optional[AccountRef] = None
    total_fee: Decimal = Decimal("0")
    context: PaymentContext = field(default_factory=PaymentContext)
    batch_id: str = field(default_factory=lambda: f"batch_{uuid.uuid4().hex[:16]}")

    def __post_init__(self) -> None:
        object.__setattr__(self, "invoices", tuple(self.invoices))
        object.__setattr__(self, "currency", TokenType(self.currency))
        object.__setattr__(self, "total_fee", Decimal(str(self.total_fee)))
        if not self.invoices:
            raise PayrailValidationError("Batch must contain at least one invoice", field="invoices")
        numbers = [invoice.number for invoice in self.invoices]
        if len(set(numbers)) != len(numbers):
            raise PayrailValidationError("Invoice numbers must be unique within a batch", field="invoices")
        if self.payee_account is None and not self.context.payee_vendor_id:
            raise PayrailValidationError(
                "Batch needs a payee account or a payee vendor id", field="payee_account"
            )
        if self.total_fee < 0:
            raise PayrailValidationError("Fee cannot be negative", field="total_fee")
        for invoice in self.invoices:
            self.currency.to_minor_units(invoice.amount)
        self.currency.to_minor_units(self.total_fee, "total_fee")

    @property
    def total_amount(self) -> Decimal:
        return sum((invoice.amount for invoice in self.invoices), Decimal("0"))

    def invoice_id(self, index: int) -> str:
        return f"{self.batch_id}:{self.invoices[index].number}"


# =============================================================================
# Ledger views
# =============================================================================

@dataclass(frozen=True)
class AccountState:
    """Snapshot of an on-ledger account."""

    address: str
    exists: bool
    owner: Optional[str] = None
    lamports: int = 0
    data: bytes = field(default=b"", repr=False)


class SubmissionState(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class SubmissionStatus:
    state: SubmissionState
    error: Optional[str] = None
    slot: Optional[int] = None


@dataclass(frozen=True)
class SecurityVerdict:
    """Outcome of inspecting one sponsor request. Never reused."""

    allowed: bool
    reasons: tuple[str, ...] = ()
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

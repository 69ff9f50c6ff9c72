"""
Audit record encoding.

Every settled invoice leaves two artifacts:

- An on-ledger memo: a compact fingerprint ``{"h", "v", "i"[, "f"]}`` holding
  the SHA-256 of the invoice's essential data, the schema version, the
  invoice number and, on the first invoice of a batch only, the flat fee.
  Its size does not depend on invoice content.
- An off-ledger AuditRecord: the essential data in clear, plus the full
  payment context encrypted with a fresh per-invoice AES-256-GCM key.
  The essential hash is bound to the ciphertext as associated data, so a
  record cannot be paired with a different fingerprint.

The essential hash is computed over canonical JSON (sorted keys, no
whitespace, normalized decimals), so anyone holding the essential data can
recompute it and compare against the memo on the ledger.
"""
from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import AuditConfig
from .exceptions import AuditIntegrityError
from .models import AccountRef, Invoice, PaymentBatch, encode_custom_value


# =============================================================================
# Canonical hashing
# =============================================================================

def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        # Plain notation: 100.00 and 100 both become "100"
        return format(obj.normalize(), "f")
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, bytes):
        return obj.hex()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_serializer,
    )


def hash_payload(payload: Mapping[str, Any]) -> str:
    """SHA-256 hex digest of the canonical JSON form."""
    return hashlib.sha256(canonicalize_json(payload).encode("utf-8")).hexdigest()


def hash_attachment(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def attachment_digests(invoice: Invoice) -> list[str]:
    """Digests supplied with the invoice followed by digests of its files."""
    return list(invoice.attachment_digests) + [
        hash_attachment(attachment.content) for attachment in invoice.attachments
    ]


def essential_data(invoice: Invoice) -> dict[str, Any]:
    return {
        "invoice_number": invoice.number,
        "amount": invoice.amount,
        "attachment_digests": attachment_digests(invoice),
    }


# =============================================================================
# Memo fingerprint
# =============================================================================

def build_memo(
    essential_hash: str,
    invoice_number: str,
    fee: Optional[Decimal] = None,
    schema_version: str = AuditConfig.MEMO_SCHEMA_VERSION,
) -> str:
    memo: dict[str, Any] = {"h": essential_hash, "v": schema_version, "i": invoice_number}
    if fee is not None:
        memo["f"] = format(fee.normalize(), "f")
    return json.dumps(memo, separators=(",", ":"), ensure_ascii=False)


def parse_memo(memo: str) -> dict[str, Any]:
    try:
        parsed = json.loads(memo)
    except json.JSONDecodeError as e:
        raise AuditIntegrityError("Memo is not valid JSON") from e
    if not isinstance(parsed, dict) or "h" not in parsed or "i" not in parsed:
        raise AuditIntegrityError("Memo is missing the fingerprint fields")
    return parsed


# =============================================================================
# Encrypted comprehensive record
# =============================================================================

@dataclass(frozen=True)
class EncryptedBlob:
    nonce: str
    ciphertext: str
    algorithm: str = AuditConfig.ENCRYPTION_ALGORITHM

    def to_dict(self) -> dict[str, str]:
        return {"algorithm": self.algorithm, "nonce": self.nonce, "ciphertext": self.ciphertext}


def generate_record_key() -> bytes:
    return AESGCM.generate_key(bit_length=AuditConfig.KEY_BYTES * 8)


def encrypt_comprehensive(
    data: Mapping[str, Any],
    key: bytes,
    associated_data: str,
) -> EncryptedBlob:
    nonce = secrets.token_bytes(AuditConfig.NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(
        nonce,
        canonicalize_json(data).encode("utf-8"),
        associated_data.encode("utf-8"),
    )
    return EncryptedBlob(nonce=nonce.hex(), ciphertext=ciphertext.hex())


def decrypt_comprehensive(
    blob: EncryptedBlob,
    key_hex: str,
    associated_data: str,
) -> dict[str, Any]:
    """Decrypt a comprehensive record for compliance review.

    Raises AuditIntegrityError if the key, ciphertext or fingerprint do not
    belong together.
    """
    try:
        plaintext = AESGCM(bytes.fromhex(key_hex)).decrypt(
            bytes.fromhex(blob.nonce),
            bytes.fromhex(blob.ciphertext),
            associated_data.encode("utf-8"),
        )
    except (InvalidTag, ValueError) as e:
        raise AuditIntegrityError("Comprehensive record failed authentication") from e
    return json.loads(plaintext)


def comprehensive_data(
    batch: PaymentBatch,
    invoice: Invoice,
    payee: AccountRef,
    digests: list[str],
    wallet_address: str,
    timestamp: datetime,
) -> dict[str, Any]:
    context = batch.context
    return {
        "invoice": {
            "number": invoice.number,
            "amount": invoice.amount,
            "attachment_digests": digests,
            "attachments": [a.name for a in invoice.attachments],
        },
        "payer": {
            "account": batch.payer_account.address,
            "organization_id": batch.payer_account.organization_id
            or context.payer_organization_id,
        },
        "payee": {
            "account": payee.address,
            "organization_id": payee.organization_id,
            "vendor_id": context.payee_vendor_id,
        },
        "payment_method": context.payment_method,
        "token": batch.currency.value,
        "payment_date": context.payment_date,
        "notes": context.notes,
        "custom_fields": {
            name: encode_custom_value(value) for name, value in context.custom_fields.items()
        },
        "wallet_address": wallet_address,
        "batch_id": batch.batch_id,
        "timestamp": timestamp,
    }


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class AuditRecord:
    """Durable record of one settled invoice."""

    invoice_id: str
    invoice_number: str
    signature: str
    essential_data: dict[str, Any]
    essential_data_hash: str
    memo: str
    comprehensive_data: EncryptedBlob
    comprehensive_data_key: str = field(repr=False)
    phase_signatures: dict[str, str] = field(default_factory=dict)
    payer_account: Optional[str] = None
    payee_account: Optional[str] = None
    transaction_index: Optional[int] = None
    token: Optional[str] = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, include_key: bool = False) -> dict[str, Any]:
        result = {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "signature": self.signature,
            "essential_data": json.loads(canonicalize_json(self.essential_data)),
            "essential_data_hash": self.essential_data_hash,
            "memo": self.memo,
            "comprehensive_data": self.comprehensive_data.to_dict(),
            "phase_signatures": dict(self.phase_signatures),
            "payer_account": self.payer_account,
            "payee_account": self.payee_account,
            "transaction_index": self.transaction_index,
            "token": self.token,
            "recorded_at": self.recorded_at.isoformat(),
            "metadata": dict(self.metadata),
        }
        if include_key:
            result["comprehensive_data_key"] = self.comprehensive_data_key
        return result


@dataclass(frozen=True)
class PreparedAudit:
    """Audit material computed before any network call for one invoice."""

    invoice_id: str
    invoice_number: str
    essential_data: dict[str, Any]
    essential_data_hash: str
    memo: str
    comprehensive_data: EncryptedBlob
    comprehensive_data_key: str = field(repr=False)
    token: str = ""
    payer_account: str = ""
    payee_account: str = ""
    fee_included: bool = False

    def finalize(
        self,
        signature: str,
        phase_signatures: Mapping[str, str],
        transaction_index: int,
    ) -> AuditRecord:
        """Bind the material to the confirmed Execute signature."""
        return AuditRecord(
            invoice_id=self.invoice_id,
            invoice_number=self.invoice_number,
            signature=signature,
            essential_data=self.essential_data,
            essential_data_hash=self.essential_data_hash,
            memo=self.memo,
            comprehensive_data=self.comprehensive_data,
            comprehensive_data_key=self.comprehensive_data_key,
            phase_signatures=dict(phase_signatures),
            payer_account=self.payer_account,
            payee_account=self.payee_account,
            transaction_index=transaction_index,
            token=self.token,
            metadata={
                "memo_size": len(self.memo.encode("utf-8")),
                "memo_hash_length": len(self.essential_data_hash),
                "fee_included": self.fee_included,
                "schema_version": parse_memo(self.memo).get("v"),
            },
        )


class AuditEncoder:
    """Computes memo fingerprints and encrypted records for invoices."""

    def __init__(
        self,
        schema_version: str = AuditConfig.MEMO_SCHEMA_VERSION,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._schema_version = schema_version
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def prepare(
        self,
        batch: PaymentBatch,
        invoice_index: int,
        payee: AccountRef,
        wallet_address: str,
    ) -> PreparedAudit:
        invoice = batch.invoices[invoice_index]
        essential = essential_data(invoice)
        essential_hash = hash_payload(essential)

        # The flat fee is disclosed once, on the first invoice only
        include_fee = invoice_index == 0 and batch.total_fee > 0
        memo = build_memo(
            essential_hash,
            invoice.number,
            fee=batch.total_fee if include_fee else None,
            schema_version=self._schema_version,
        )

        key = generate_record_key()
        blob = encrypt_comprehensive(
            comprehensive_data(
                batch,
                invoice,
                payee,
                essential["attachment_digests"],
                wallet_address,
                self._clock(),
            ),
            key,
            associated_data=essential_hash,
        )
        return PreparedAudit(
            invoice_id=batch.invoice_id(invoice_index),
            invoice_number=invoice.number,
            essential_data=essential,
            essential_data_hash=essential_hash,
            memo=memo,
            comprehensive_data=blob,
            comprehensive_data_key=key.hex(),
            token=batch.currency.value,
            payer_account=batch.payer_account.address,
            payee_account=payee.address,
            fee_included=include_fee,
        )


def verify_record(record: AuditRecord, ledger_memo: Optional[str] = None) -> bool:
    """Check a record against the fingerprint published on the ledger.

    ``ledger_memo`` is the memo text read from the ledger; the record's own
    memo copy is used when omitted.
    """
    recomputed = hash_payload(record.essential_data)
    if recomputed != record.essential_data_hash:
        return False
    memo = parse_memo(ledger_memo if ledger_memo is not None else record.memo)
    return memo.get("h") == recomputed and memo.get("i") == record.invoice_number

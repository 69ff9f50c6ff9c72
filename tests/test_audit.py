"""
Tests for payrail.audit.

Tests cover:
- Canonical hashing
- Memo fingerprints and fee disclosure
- Comprehensive record encryption
- Record verification
"""
from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from payrail.audit import (
    AuditEncoder,
    EncryptedBlob,
    build_memo,
    canonicalize_json,
    decrypt_comprehensive,
    essential_data,
    hash_payload,
    parse_memo,
    verify_record,
)
from payrail.exceptions import AuditIntegrityError
from payrail.keys import Keypair
from payrail.models import (
    AccountRef,
    Attachment,
    Invoice,
    PaymentBatch,
    PaymentContext,
    TokenType,
)

FIXED_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
PAYER = AccountRef(str(Keypair.from_seed(bytes([21]) * 32).pubkey), organization_id="org_payer")
PAYEE = AccountRef(str(Keypair.from_seed(bytes([22]) * 32).pubkey), organization_id="org_payee")
WALLET = str(Keypair.from_seed(bytes([23]) * 32).pubkey)


@pytest.fixture
def encoder() -> AuditEncoder:
    return AuditEncoder(clock=lambda: FIXED_TIME)


@pytest.fixture
def batch() -> PaymentBatch:
    return PaymentBatch(
        invoices=(
            Invoice("INV-1", Decimal("100.00"), attachments=(Attachment("inv.pdf", b"%PDF"),)),
            Invoice("INV-2", Decimal("250.5")),
        ),
        currency=TokenType.USDC,
        payer_account=PAYER,
        payee_account=PAYEE,
        total_fee=Decimal("15"),
        context=PaymentContext(
            payer_organization_id="org_payer",
            notes="Q2 services",
            custom_fields={"po_number": "PO-7", "approved": True},
        ),
    )


class TestCanonicalHashing:
    """Tests for canonical JSON and hashing."""

    def test_key_order_does_not_matter(self):
        """Dictionaries with the same entries hash identically."""
        assert hash_payload({"a": 1, "b": 2}) == hash_payload({"b": 2, "a": 1})

    def test_decimals_are_normalized(self):
        """100.00 and 100 are the same amount."""
        assert canonicalize_json({"x": Decimal("100.00")}) == '{"x":"100"}'
        assert hash_payload({"x": Decimal("100.00")}) == hash_payload({"x": Decimal("100")})

    def test_compact_separators(self):
        assert canonicalize_json({"b": [1, 2], "a": "z"}) == '{"a":"z","b":[1,2]}'

    def test_unserializable_values(self):
        with pytest.raises(TypeError):
            canonicalize_json({"x": object()})

    def test_essential_data_includes_attachment_digests(self):
        """Attachments contribute SHA-256 digests, not content."""
        invoice = Invoice("INV-1", Decimal("1"), attachments=(Attachment("a", b"abc"),))
        digests = essential_data(invoice)["attachment_digests"]
        assert digests == ["ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"]


class TestMemo:
    """Tests for memo fingerprints."""

    def test_memo_fields(self, encoder, batch):
        """The memo carries hash, version and invoice number."""
        prepared = encoder.prepare(batch, 1, PAYEE, WALLET)
        memo = json.loads(prepared.memo)

        assert memo == {"h": prepared.essential_data_hash, "v": "1.0", "i": "INV-2"}
        assert len(memo["h"]) == 64
        int(memo["h"], 16)

    def test_fee_only_on_first_invoice(self, encoder, batch):
        """The batch fee is disclosed once, on invoice 0."""
        first = encoder.prepare(batch, 0, PAYEE, WALLET)
        second = encoder.prepare(batch, 1, PAYEE, WALLET)

        assert json.loads(first.memo)["f"] == "15"
        assert first.fee_included is True
        assert "f" not in json.loads(second.memo)
        assert second.fee_included is False

    def test_zero_fee_not_disclosed(self, encoder, batch):
        """A fee-free batch carries no fee field."""
        free = replace(batch, total_fee=Decimal("0"))
        assert "f" not in json.loads(encoder.prepare(free, 0, PAYEE, WALLET).memo)

    def test_memo_size_independent_of_content(self, encoder):
        """Amounts, attachments and context do not change memo size."""
        small = PaymentBatch(
            invoices=(Invoice("INV-9", Decimal("1")),),
            currency=TokenType.USDC,
            payer_account=PAYER,
            payee_account=PAYEE,
        )
        large = PaymentBatch(
            invoices=(
                Invoice(
                    "INV-9",
                    Decimal("123456789.123456"),
                    attachments=tuple(Attachment(f"f{n}", b"x" * 10_000) for n in range(5)),
                ),
            ),
            currency=TokenType.USDC,
            payer_account=PAYER,
            payee_account=PAYEE,
            context=PaymentContext(notes="n" * 5_000),
        )
        assert len(encoder.prepare(small, 0, PAYEE, WALLET).memo) == len(
            encoder.prepare(large, 0, PAYEE, WALLET).memo
        )

    def test_parse_memo_rejects_garbage(self):
        with pytest.raises(AuditIntegrityError):
            parse_memo("not json")
        with pytest.raises(AuditIntegrityError):
            parse_memo('{"v":"1.0"}')

    def test_build_memo_normalizes_fee(self):
        assert json.loads(build_memo("a" * 64, "INV-1", fee=Decimal("15.00")))["f"] == "15"


class TestComprehensiveRecord:
    """Tests for the encrypted comprehensive record."""

    def test_decrypts_with_matching_hash(self, encoder, batch):
        """The record key and essential hash recover the full context."""
        prepared = encoder.prepare(batch, 0, PAYEE, WALLET)
        data = decrypt_comprehensive(
            prepared.comprehensive_data,
            prepared.comprehensive_data_key,
            prepared.essential_data_hash,
        )

        assert data["invoice"]["number"] == "INV-1"
        assert data["invoice"]["amount"] == "100"
        assert data["notes"] == "Q2 services"
        assert data["custom_fields"]["po_number"] == {"type": "string", "value": "PO-7"}
        assert data["custom_fields"]["approved"] == {"type": "boolean", "value": True}
        assert data["wallet_address"] == WALLET
        assert data["payee"]["account"] == PAYEE.address
        assert data["timestamp"] == FIXED_TIME.isoformat()

    def test_mismatched_hash_fails(self, encoder, batch):
        """A record cannot be paired with another fingerprint."""
        prepared = encoder.prepare(batch, 0, PAYEE, WALLET)
        other = encoder.prepare(batch, 1, PAYEE, WALLET)
        with pytest.raises(AuditIntegrityError):
            decrypt_comprehensive(
                prepared.comprehensive_data,
                prepared.comprehensive_data_key,
                other.essential_data_hash,
            )

    def test_wrong_key_fails(self, encoder, batch):
        prepared = encoder.prepare(batch, 0, PAYEE, WALLET)
        with pytest.raises(AuditIntegrityError):
            decrypt_comprehensive(
                prepared.comprehensive_data, "00" * 32, prepared.essential_data_hash
            )

    def test_tampered_ciphertext_fails(self, encoder, batch):
        prepared = encoder.prepare(batch, 0, PAYEE, WALLET)
        blob = prepared.comprehensive_data
        flipped = format(int(blob.ciphertext[:2], 16) ^ 0x01, "02x") + blob.ciphertext[2:]
        with pytest.raises(AuditIntegrityError):
            decrypt_comprehensive(
                EncryptedBlob(nonce=blob.nonce, ciphertext=flipped),
                prepared.comprehensive_data_key,
                prepared.essential_data_hash,
            )

    def test_keys_are_unique_per_invoice(self, encoder, batch):
        """Every invoice gets a fresh key and nonce."""
        first = encoder.prepare(batch, 0, PAYEE, WALLET)
        again = encoder.prepare(batch, 0, PAYEE, WALLET)
        assert first.comprehensive_data_key != again.comprehensive_data_key
        assert first.comprehensive_data.nonce != again.comprehensive_data.nonce
        assert first.essential_data_hash == again.essential_data_hash


class TestAuditRecord:
    """Tests for finalized records and verification."""

    def test_finalize_binds_signature(self, encoder, batch):
        prepared = encoder.prepare(batch, 0, PAYEE, WALLET)
        record = prepared.finalize("sig-exec", {"create": "sig-c", "execute": "sig-exec"}, 5)

        assert record.signature == "sig-exec"
        assert record.invoice_id == batch.invoice_id(0)
        assert record.transaction_index == 5
        assert record.metadata["fee_included"] is True
        assert record.metadata["memo_hash_length"] == 64

    def test_to_dict_hides_key_by_default(self, encoder, batch):
        record = encoder.prepare(batch, 0, PAYEE, WALLET).finalize("sig", {}, 1)
        assert "comprehensive_data_key" not in record.to_dict()
        assert record.to_dict(include_key=True)["comprehensive_data_key"] == record.comprehensive_data_key
        assert record.comprehensive_data_key not in repr(record)

    def test_verify_record(self, encoder, batch):
        """Essential data recomputes to the hash in the ledger memo."""
        prepared = encoder.prepare(batch, 0, PAYEE, WALLET)
        record = prepared.finalize("sig", {}, 1)

        assert verify_record(record) is True
        assert verify_record(record, ledger_memo=prepared.memo) is True

    def test_verify_detects_altered_essential_data(self, encoder, batch):
        record = encoder.prepare(batch, 0, PAYEE, WALLET).finalize("sig", {}, 1)
        altered = replace(record, essential_data={**record.essential_data, "amount": Decimal("1")})
        assert verify_record(altered) is False

    def test_verify_detects_foreign_memo(self, encoder, batch):
        record = encoder.prepare(batch, 0, PAYEE, WALLET).finalize("sig", {}, 1)
        foreign = encoder.prepare(batch, 1, PAYEE, WALLET).memo
        assert verify_record(record, ledger_memo=foreign) is False

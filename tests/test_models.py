"""Tests for payrail.models."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from payrail.exceptions import PayrailValidationError
from payrail.keys import Keypair
from payrail.models import (
    PHASE_ORDER,
    AccountRef,
    Invoice,
    PaymentBatch,
    PaymentContext,
    TokenType,
    TransactionPhase,
    encode_custom_value,
)

ADDRESS = str(Keypair.from_seed(bytes([5]) * 32).pubkey)


def _batch(**overrides) -> PaymentBatch:
    values = dict(
        invoices=(Invoice("INV-1", Decimal("100.00")),),
        currency=TokenType.USDC,
        payer_account=AccountRef(ADDRESS),
        payee_account=AccountRef(ADDRESS),
    )
    values.update(overrides)
    return PaymentBatch(**values)


class TestTokenType:
    """Tests for TokenType."""

    def test_minor_units(self):
        """Amounts convert exactly to six-decimal minor units."""
        assert TokenType.USDC.to_minor_units(Decimal("100.00")) == 100_000_000
        assert TokenType.EURC.to_minor_units(Decimal("0.000001")) == 1

    def test_refuses_rounding(self):
        """Amounts finer than the minor unit are rejected."""
        with pytest.raises(PayrailValidationError):
            TokenType.USDT.to_minor_units(Decimal("1.0000001"))

    def test_mints_are_distinct(self):
        """Each token has its own mint."""
        assert len({token.mint for token in TokenType}) == 3
        assert all(token.decimals == 6 for token in TokenType)


class TestInvoice:
    """Tests for Invoice."""

    def test_amount_coerced_to_decimal(self):
        """String amounts are accepted as decimals."""
        assert Invoice("INV-1", "12.5").amount == Decimal("12.5")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), Decimal("NaN")])
    def test_amount_must_be_positive(self, amount):
        """Zero, negative and non-finite amounts are rejected."""
        with pytest.raises(PayrailValidationError):
            Invoice("INV-1", amount)

    def test_number_length(self):
        """Invoice numbers must be 1-64 characters."""
        with pytest.raises(PayrailValidationError):
            Invoice("", Decimal("1"))
        with pytest.raises(PayrailValidationError):
            Invoice("X" * 65, Decimal("1"))

    def test_digest_length(self):
        """Provided attachment digests must be SHA-256 hex."""
        with pytest.raises(PayrailValidationError):
            Invoice("INV-1", Decimal("1"), attachment_digests=("abc",))


class TestAccountRef:
    """Tests for AccountRef."""

    def test_valid_address(self):
        assert AccountRef(ADDRESS).pubkey == Keypair.from_seed(bytes([5]) * 32).pubkey

    def test_invalid_address(self):
        """Malformed addresses are rejected at construction."""
        with pytest.raises(PayrailValidationError):
            AccountRef("not-an-address")


class TestCustomValues:
    """Tests for tagged custom field values."""

    def test_tags(self):
        """Each supported type gets its own tag."""
        assert encode_custom_value("po-7") == {"type": "string", "value": "po-7"}
        assert encode_custom_value(True) == {"type": "boolean", "value": True}
        assert encode_custom_value(Decimal("10.50")) == {"type": "number", "value": "10.5"}
        assert encode_custom_value(3) == {"type": "number", "value": "3"}

    def test_naive_timestamps_are_utc(self):
        """Naive datetimes are treated as UTC."""
        encoded = encode_custom_value(datetime(2024, 1, 2, 3, 4, 5))
        assert encoded == {"type": "timestamp", "value": "2024-01-02T03:04:05+00:00"}

    def test_floats_rejected(self):
        """Floats cannot be encoded deterministically."""
        with pytest.raises(PayrailValidationError):
            encode_custom_value(1.5)

    def test_context_validates_custom_fields(self):
        """Unsupported values fail when the context is built."""
        with pytest.raises(PayrailValidationError):
            PaymentContext(custom_fields={"ratio": 0.5})


class TestPaymentBatch:
    """Tests for PaymentBatch."""

    def test_totals_and_ids(self):
        """Totals sum invoice amounts; invoice ids are scoped to the batch."""
        batch = _batch(
            invoices=(Invoice("INV-1", Decimal("100")), Invoice("INV-2", Decimal("0.5")))
        )
        assert batch.total_amount == Decimal("100.5")
        assert batch.invoice_id(1) == f"{batch.batch_id}:INV-2"
        assert batch.batch_id.startswith("batch_")

    def test_requires_invoices(self):
        with pytest.raises(PayrailValidationError):
            _batch(invoices=())

    def test_unique_invoice_numbers(self):
        """Duplicate invoice numbers are rejected."""
        with pytest.raises(PayrailValidationError):
            _batch(invoices=(Invoice("INV-1", Decimal("1")), Invoice("INV-1", Decimal("2"))))

    def test_payee_or_vendor_required(self):
        """A batch needs a payee account or a vendor to resolve one."""
        with pytest.raises(PayrailValidationError):
            _batch(payee_account=None)
        batch = _batch(payee_account=None, context=PaymentContext(payee_vendor_id="vendor-1"))
        assert batch.payee_account is None

    def test_fee_rules(self):
        """Fees are non-negative and exact in minor units."""
        with pytest.raises(PayrailValidationError):
            _batch(total_fee=Decimal("-1"))
        with pytest.raises(PayrailValidationError):
            _batch(total_fee=Decimal("0.0000001"))
        assert _batch(total_fee="15").total_fee == Decimal("15")

    def test_currency_coerced(self):
        assert _batch(currency="EURC").currency is TokenType.EURC


def test_phase_order():
    """Phases run Create, ProposeApprove, Execute."""
    assert PHASE_ORDER == (
        TransactionPhase.CREATE,
        TransactionPhase.PROPOSE_APPROVE,
        TransactionPhase.EXECUTE,
    )


def test_custom_field_timestamp_with_zone():
    stamp = datetime(2024, 5, 1, tzinfo=timezone.utc)
    assert encode_custom_value(stamp)["value"] == "2024-05-01T00:00:00+00:00"

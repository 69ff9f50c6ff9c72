"""Tests for payrail.audit_store_memory."""
from __future__ import annotations

from decimal import Decimal

import pytest

from payrail.audit import AuditEncoder
from payrail.audit_store_memory import InMemoryAuditRecordStore
from payrail.exceptions import AuditStoreError
from payrail.keys import Keypair
from payrail.models import AccountRef, Invoice, PaymentBatch, TokenType

ACCOUNT = AccountRef(str(Keypair.from_seed(bytes([60]) * 32).pubkey))


@pytest.fixture
def record():
    batch = PaymentBatch(
        invoices=(Invoice("INV-1", Decimal("10")),),
        currency=TokenType.USDC,
        payer_account=ACCOUNT,
        payee_account=ACCOUNT,
    )
    return AuditEncoder().prepare(batch, 0, ACCOUNT, ACCOUNT.address).finalize("sig", {}, 1)


class TestInMemoryAuditRecordStore:
    """Tests for the in-memory record store."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, record):
        store = InMemoryAuditRecordStore()
        await store.put(record.invoice_id, record)

        stored = await store.get(record.invoice_id)
        assert stored.signature == "sig"
        assert len(store) == 1
        assert store.records == [stored]

    @pytest.mark.asyncio
    async def test_key_held_separately(self, record):
        """Stored records carry no key; the key is kept aside."""
        store = InMemoryAuditRecordStore()
        await store.put(record.invoice_id, record)

        assert (await store.get(record.invoice_id)).comprehensive_data_key == ""
        assert store.key_for(record.invoice_id) == record.comprehensive_data_key

    @pytest.mark.asyncio
    async def test_append_only(self, record):
        store = InMemoryAuditRecordStore()
        await store.put(record.invoice_id, record)
        with pytest.raises(AuditStoreError):
            await store.put(record.invoice_id, record)

    @pytest.mark.asyncio
    async def test_scripted_failures(self, record):
        store = InMemoryAuditRecordStore()
        store.fail_next_writes(1)
        with pytest.raises(AuditStoreError):
            await store.put(record.invoice_id, record)
        await store.put(record.invoice_id, record)
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_missing_record(self):
        store = InMemoryAuditRecordStore()
        assert await store.get("nope") is None
        assert store.key_for("nope") is None

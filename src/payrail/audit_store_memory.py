"""In-memory audit record store (demo/dev)."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Optional

from .audit import AuditRecord
from .exceptions import AuditStoreError

logger = logging.getLogger(__name__)


class InMemoryAuditRecordStore:
    """Append-only record store (swap for a durable store in production).

    Record keys are held in a separate map, the way a production deployment
    would hand them to a key service; stored records carry no key.
    """

    def __init__(self) -> None:
        self._records: dict[str, AuditRecord] = {}
        self._keys: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._failures_remaining = 0

    def fail_next_writes(self, count: int = 1) -> None:
        """Make the next ``count`` writes raise AuditStoreError."""
        self._failures_remaining = count

    async def put(self, invoice_id: str, record: AuditRecord) -> None:
        async with self._lock:
            if self._failures_remaining > 0:
                self._failures_remaining -= 1
                raise AuditStoreError(f"Write of record {invoice_id} failed")
            if invoice_id in self._records:
                raise AuditStoreError(
                    f"Record {invoice_id} already exists",
                    details={"invoice_id": invoice_id},
                )
            self._keys[invoice_id] = record.comprehensive_data_key
            self._records[invoice_id] = dataclasses.replace(record, comprehensive_data_key="")
        logger.info(f"Stored audit record {invoice_id}", extra={"signature": record.signature})

    async def get(self, invoice_id: str) -> Optional[AuditRecord]:
        return self._records.get(invoice_id)

    def key_for(self, invoice_id: str) -> Optional[str]:
        return self._keys.get(invoice_id)

    @property
    def records(self) -> list[AuditRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

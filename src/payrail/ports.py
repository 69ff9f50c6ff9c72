"""Interfaces to the collaborators the orchestrator drives."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol

from .keys import Pubkey
from .models import AccountRef, AccountState, SubmissionStatus
from .transactions import Transaction

if TYPE_CHECKING:
    from .audit import AuditRecord
    from .builder import UnsignedPhase


class WalletSigner(Protocol):
    """The end user's wallet.

    ``sign`` returns the transaction with the member signature filled in,
    or raises WalletRejected when the user declines.
    """

    @property
    def public_key(self) -> Pubkey: ...

    async def sign(self, phase: "UnsignedPhase") -> Transaction: ...


class LedgerClient(Protocol):
    """Read and submit operations against the ledger network."""

    async def resolve_account(self, address: str) -> AccountState: ...

    async def get_sequence_counter(self, multisig_address: str) -> int: ...

    async def get_latest_blockhash(self) -> str: ...

    async def submit(self, signed_transaction: bytes) -> str: ...

    async def get_status(self, submission_id: str) -> SubmissionStatus: ...


class VendorDirectory(Protocol):
    """Counterparty lookup; None when the vendor has no settlement account."""

    async def get_settlement_account(self, vendor_id: str) -> Optional[AccountRef]: ...


class AuditRecordStore(Protocol):
    """Append-only encrypted record store. Raises AuditStoreError on failure."""

    async def put(self, invoice_id: str, record: "AuditRecord") -> None: ...

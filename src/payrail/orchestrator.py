"""
Batch payment orchestration.

A batch settles its invoices strictly one after another, and each invoice
through three strictly ordered phases (Create, ProposeApprove, Execute).
Every phase is built against live ledger state, signed by the member's
wallet, checked by the SecurityValidator, co-signed and submitted by the
FeePayerSigner and confirmed before the next phase is built.

State machine (observed through BatchExecution events):

    IDLE -> ENCRYPTING -> CREATING <-> CONFIRMING -> CONFIRMED
                  \\            \\           \\
                   +------------+-----------+--> FAILED

ENCRYPTING covers audit precomputation before any network call. CREATING
and CONFIRMING repeat per phase per invoice; CONFIRMED is only reached
after the last invoice's Execute confirms. Any hard failure halts the
remaining invoices; records of invoices already settled stand.

Cancellation is honoured up to the moment a phase reaches the fee-payer
signer. A phase already submitted is confirmed (and, for Execute, recorded)
before the batch halts.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Optional, TypeVar

from .audit import AuditEncoder, AuditRecord, PreparedAudit
from .builder import InvoicePlan, PhaseBuilder, UnsignedPhase
from .confirmation import ConfirmationConfig, ConfirmationEngine, ConfirmationOutcome, ConfirmationResult
from .exceptions import (
    AuditStoreError,
    BatchCancelled,
    BuildError,
    ConfirmationTimeout,
    OnChainFailure,
    PayrailException,
    SubmissionError,
)
from .fee_payer import FeePayerSigner, SubmittedPhase
from .logging import PhaseLogger, mask_address
from .models import PHASE_ORDER, AccountRef, PaymentBatch, TransactionPhase
from .ports import AuditRecordStore, LedgerClient, VendorDirectory, WalletSigner
from .validator import SecurityValidator, SponsorRequest

if TYPE_CHECKING:
    from .config import PayrailSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BatchState(str, Enum):
    IDLE = "idle"
    ENCRYPTING = "encrypting"
    CREATING = "creating"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({BatchState.CONFIRMED, BatchState.FAILED})

# Halts that leave nothing to redo on the ledger once resolved
RESUMABLE_ERRORS = (ConfirmationTimeout, AuditStoreError)


@dataclass(frozen=True)
class BatchEvent:
    """One state transition, as shown to a presentation layer."""

    state: BatchState
    invoice_index: Optional[int] = None
    phase: Optional[TransactionPhase] = None
    detail: str = ""
    error: Optional[PayrailException] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "invoice_index": self.invoice_index,
            "phase": self.phase.value if self.phase else None,
            "detail": self.detail,
            "error": self.error.to_dict() if self.error else None,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class InvoiceProgress:
    plan: Optional[InvoicePlan] = None
    next_phase: int = 0
    phase_signatures: dict[str, str] = field(default_factory=dict)

    @property
    def phases_done(self) -> bool:
        return self.next_phase >= len(PHASE_ORDER)


@dataclass(frozen=True)
class PendingConfirmation:
    invoice_index: int
    phase: TransactionPhase
    submission_id: str


class BatchExecution:
    """A running batch: an async stream of BatchEvents plus its results.

    Usage:
        execution = orchestrator.execute_batch(batch)
        async for event in execution:
            render(event)
        if execution.error:
            ...
    """

    def __init__(
        self,
        orchestrator: "PaymentOrchestrator",
        batch: PaymentBatch,
        wallet: WalletSigner,
    ) -> None:
        self.batch = batch
        self.wallet = wallet
        self.state = BatchState.IDLE
        self.history: list[BatchEvent] = []
        self.records: list[AuditRecord] = []
        self.error: Optional[BaseException] = None
        self.payee: Optional[AccountRef] = None
        self.audits: dict[int, PreparedAudit] = {}
        self.progress: dict[int, InvoiceProgress] = {}
        self.settled: set[int] = set()
        self.pending: Optional[PendingConfirmation] = None
        self.current_index: Optional[int] = None

        self._orchestrator = orchestrator
        self._events: asyncio.Queue[BatchEvent] = asyncio.Queue()
        self._cancel = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._drained = False

    # ------------------------------------------------------------------
    # Caller API
    # ------------------------------------------------------------------

    @property
    def batch_id(self) -> str:
        return self.batch.batch_id

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES and (self._task is None or self._task.done())

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def start(self) -> None:
        """Schedule the batch on the running event loop. Idempotent."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        """Stop before the next phase reaches the fee-payer signer."""
        if not self._cancel.is_set():
            logger.info(f"Cancellation requested for batch {self.batch_id}")
        self._cancel.set()

    async def wait(self) -> BatchState:
        self.start()
        assert self._task is not None
        await self._task
        return self.state

    async def run(self) -> list[AuditRecord]:
        """Run to completion and return the records; raise on failure."""
        await self.wait()
        if self.error is not None:
            raise self.error
        return list(self.records)

    def raise_for_failure(self) -> None:
        if self.error is not None:
            raise self.error

    async def recheck(self, submission_id: Optional[str] = None) -> ConfirmationResult:
        """Poll again for a submission that timed out.

        On success the phase counts as done (an Execute also persists its
        record) and the batch can be resumed.
        """
        pending = self.pending
        if pending is None:
            raise RuntimeError(f"Batch {self.batch_id} has no unconfirmed submission")
        if submission_id is not None and submission_id != pending.submission_id:
            raise ValueError(f"Submission {submission_id} is not pending in this batch")
        return await self._orchestrator._recheck(self, pending)

    def resume(self) -> None:
        """Continue a failed batch after its unconfirmed phase resolved.

        Only a confirmation timeout resolved through ``recheck()`` or a
        failed audit record write can be resumed. Settled invoices and
        confirmed phases are skipped.
        """
        if self._task is not None and not self._task.done():
            raise RuntimeError(f"Batch {self.batch_id} is still running")
        if self.state != BatchState.FAILED:
            raise RuntimeError(f"Batch {self.batch_id} is {self.state.value}, not failed")
        if self.pending is not None:
            raise RuntimeError(
                f"Submission {self.pending.submission_id} is unresolved; recheck it first"
            )
        if self._cancel.is_set():
            raise BatchCancelled(f"Batch {self.batch_id} was cancelled")
        if not isinstance(self.error, RESUMABLE_ERRORS):
            raise RuntimeError(
                f"Batch {self.batch_id} halted on {type(self.error).__name__}, which is final"
            )
        logger.info(f"Resuming batch {self.batch_id}", extra={"settled": sorted(self.settled)})
        self.error = None
        self._drained = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def __aiter__(self) -> "BatchExecution":
        self.start()
        return self

    async def __anext__(self) -> BatchEvent:
        if self._drained:
            raise StopAsyncIteration
        event = await self._events.get()
        if event.state in TERMINAL_STATES:
            self._drained = True
        return event

    # ------------------------------------------------------------------
    # Internals used by the orchestrator
    # ------------------------------------------------------------------

    def emit(
        self,
        state: BatchState,
        invoice_index: Optional[int] = None,
        phase: Optional[TransactionPhase] = None,
        detail: str = "",
        error: Optional[PayrailException] = None,
    ) -> BatchEvent:
        event = BatchEvent(state, invoice_index, phase, detail, error)
        self.state = state
        self.history.append(event)
        self._events.put_nowait(event)
        return event

    def check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise BatchCancelled(
                f"Batch {self.batch_id} cancelled",
                details={"settled": sorted(self.settled)},
            )

    async def unless_cancelled(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` but abandon it as soon as cancel() is called."""
        work = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({work, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not work.done():
                work.cancel()
        if self._cancel.is_set():
            if work.done() and not work.cancelled() and work.exception() is not None:
                logger.debug(f"Discarding wallet error after cancellation: {work.exception()}")
            self.check_cancelled()
        return work.result()

    async def _run(self) -> None:
        try:
            await self._orchestrator._run_batch(self)
        except PayrailException as e:
            self.error = e
            index = self.pending.invoice_index if self.pending else self.current_index
            logger.error(
                f"Batch {self.batch_id} failed: {e.message}",
                extra={"error": e.to_dict(), "settled": sorted(self.settled)},
            )
            self.emit(BatchState.FAILED, invoice_index=index, detail=e.message, error=e)
        except Exception as e:
            self.error = e
            self.emit(BatchState.FAILED, detail=f"Unexpected error: {e}")
            raise
        else:
            self.emit(
                BatchState.CONFIRMED,
                detail=f"{len(self.settled)} of {len(self.batch.invoices)} invoices settled",
            )


class PaymentOrchestrator:
    """Drives batches through the phase builder, validator, signer and confirmation engine."""

    def __init__(
        self,
        *,
        builder: PhaseBuilder,
        validator: SecurityValidator,
        signer: FeePayerSigner,
        confirmation: ConfirmationEngine,
        store: AuditRecordStore,
        wallet: Optional[WalletSigner] = None,
        vendors: Optional[VendorDirectory] = None,
        encoder: Optional[AuditEncoder] = None,
    ) -> None:
        self._builder = builder
        self._validator = validator
        self._signer = signer
        self._confirmation = confirmation
        self._store = store
        self._wallet = wallet
        self._vendors = vendors
        self._encoder = encoder or AuditEncoder()
        self._phase_logger = PhaseLogger(__name__)

    @classmethod
    def from_settings(
        cls,
        settings: "PayrailSettings",
        ledger: LedgerClient,
        store: AuditRecordStore,
        wallet: Optional[WalletSigner] = None,
        vendors: Optional[VendorDirectory] = None,
    ) -> "PaymentOrchestrator":
        signer = FeePayerSigner.from_settings(settings, ledger)
        return cls(
            builder=PhaseBuilder(ledger, signer.public_key, settings.fee_collector_pubkey()),
            validator=SecurityValidator(signer.public_key, settings.transaction_fee),
            signer=signer,
            confirmation=ConfirmationEngine(
                ledger, ConfirmationConfig.from_settings(settings.confirmation)
            ),
            store=store,
            wallet=wallet,
            vendors=vendors,
            encoder=AuditEncoder(schema_version=settings.memo_schema_version),
        )

    def execute_batch(
        self,
        batch: PaymentBatch,
        wallet: Optional[WalletSigner] = None,
    ) -> BatchExecution:
        """Create the execution for ``batch``; it starts when first awaited or iterated."""
        wallet = wallet or self._wallet
        if wallet is None:
            raise ValueError("A wallet signer is required to execute a batch")
        return BatchExecution(self, batch, wallet)

    # ------------------------------------------------------------------

    async def _run_batch(self, execution: BatchExecution) -> None:
        batch = execution.batch
        if execution.payee is None:
            execution.check_cancelled()
            execution.payee = await self._resolve_payee(batch)
            execution.emit(BatchState.ENCRYPTING, detail="Preparing audit records")
            wallet_address = str(execution.wallet.public_key)
            for index in range(len(batch.invoices)):
                execution.audits[index] = self._encoder.prepare(
                    batch, index, execution.payee, wallet_address
                )
            logger.info(
                f"Batch {batch.batch_id}: {len(batch.invoices)} invoices, "
                f"{batch.total_amount} {batch.currency.value} to {mask_address(execution.payee.address)}",
                extra={"fee": str(batch.total_fee)},
            )

        for index in range(len(batch.invoices)):
            if index in execution.settled:
                continue
            await self._run_invoice(execution, index)

    async def _resolve_payee(self, batch: PaymentBatch) -> AccountRef:
        if batch.payee_account is not None:
            return batch.payee_account
        vendor_id = batch.context.payee_vendor_id
        if self._vendors is None:
            raise BuildError("No vendor directory configured to resolve the payee")
        try:
            account = await self._vendors.get_settlement_account(vendor_id)
        except PayrailException:
            raise
        except Exception as e:
            raise BuildError(
                f"Vendor lookup failed: {e}", details={"vendor_id": vendor_id}
            ) from e
        if account is None:
            raise BuildError(
                "Payee has no valid settlement address", details={"vendor_id": vendor_id}
            )
        return account

    async def _run_invoice(self, execution: BatchExecution, index: int) -> None:
        batch = execution.batch
        progress = execution.progress.setdefault(index, InvoiceProgress())
        audit = execution.audits[index]
        execution.current_index = index

        if progress.plan is None:
            execution.check_cancelled()
            progress.plan = await self._builder.prepare_invoice(
                batch, index, execution.payee, execution.wallet.public_key, audit.memo
            )

        while not progress.phases_done:
            phase = PHASE_ORDER[progress.next_phase]
            execution.check_cancelled()
            try:
                submitted = await self._submit_phase(execution, progress.plan, phase)
                submission_id = submitted.submission_id
            except SubmissionError as e:
                if not e.details.get("may_have_landed"):
                    raise
                submission_id = e.details["signature"]
                logger.warning(
                    f"Submission {submission_id} was not acknowledged, checking its status",
                    extra={"error": e.to_dict()},
                )

            pending = PendingConfirmation(index, phase, submission_id)
            execution.pending = pending
            execution.emit(
                BatchState.CONFIRMING, index, phase, detail=f"Awaiting {submission_id}"
            )
            async with self._phase_logger.operation(
                "confirm", invoice_number=progress.plan.invoice_number, phase=phase.value
            ) as ctx:
                try:
                    result = await self._confirmation.ensure_confirmed(submission_id)
                except OnChainFailure:
                    execution.pending = None
                    raise
                ctx.metadata["polls"] = result.polls
            self._complete_phase(execution, pending)

        if index not in execution.settled:
            await self._persist(execution, index)

    async def _submit_phase(
        self,
        execution: BatchExecution,
        plan: InvoicePlan,
        phase: TransactionPhase,
    ) -> SubmittedPhase:
        batch = execution.batch
        build = {
            TransactionPhase.CREATE: self._builder.build_create,
            TransactionPhase.PROPOSE_APPROVE: self._builder.build_propose_approve,
            TransactionPhase.EXECUTE: self._builder.build_execute,
        }[phase]

        execution.emit(BatchState.CREATING, plan.invoice_index, phase, detail="Building transaction")
        async with self._phase_logger.operation(
            "build", invoice_number=plan.invoice_number, phase=phase.value
        ):
            unsigned: UnsignedPhase = await build(plan)

        execution.emit(
            BatchState.CREATING, plan.invoice_index, phase, detail="Awaiting wallet signature"
        )
        execution.check_cancelled()
        signed = await execution.unless_cancelled(execution.wallet.sign(unsigned))

        request = SponsorRequest(
            serialized_transaction=signed.serialize(),
            expected_fee_amount=batch.total_fee,
            token_mint=str(batch.currency.mint),
            organization_id=batch.payer_account.organization_id
            or batch.context.payer_organization_id,
            phase=phase,
            invoice_number=plan.invoice_number,
        )
        payload = self._validator.validate(request)

        # Last point at which cancellation is honoured
        execution.check_cancelled()
        async with self._phase_logger.operation(
            "submit", invoice_number=plan.invoice_number, phase=phase.value
        ) as ctx:
            submitted = await self._signer.sign_and_submit(payload)
            ctx.metadata["submission_id"] = submitted.submission_id
            ctx.metadata["attempts"] = submitted.attempts
        return submitted

    def _complete_phase(
        self,
        execution: BatchExecution,
        pending: PendingConfirmation,
        announce: bool = True,
    ) -> None:
        progress = execution.progress[pending.invoice_index]
        progress.phase_signatures[pending.phase.value] = pending.submission_id
        progress.next_phase = PHASE_ORDER.index(pending.phase) + 1
        execution.pending = None
        if announce:
            execution.emit(
                BatchState.CONFIRMING,
                pending.invoice_index,
                pending.phase,
                detail=f"Confirmed {pending.submission_id}",
            )

    async def _persist(
        self, execution: BatchExecution, index: int, announce: bool = True
    ) -> None:
        progress = execution.progress[index]
        audit = execution.audits[index]
        plan = progress.plan
        assert plan is not None
        record = audit.finalize(
            signature=progress.phase_signatures[TransactionPhase.EXECUTE.value],
            phase_signatures=progress.phase_signatures,
            transaction_index=plan.transaction_index,
        )
        async with self._phase_logger.operation(
            "persist", invoice_number=plan.invoice_number, phase=TransactionPhase.EXECUTE.value
        ):
            await self._store.put(audit.invoice_id, record)
        execution.records.append(record)
        execution.settled.add(index)
        if announce:
            execution.emit(
                BatchState.CONFIRMING,
                index,
                TransactionPhase.EXECUTE,
                detail=f"Invoice {plan.invoice_number} settled",
            )

    async def _recheck(
        self, execution: BatchExecution, pending: PendingConfirmation
    ) -> ConfirmationResult:
        result = await self._confirmation.recheck(pending.submission_id)
        if result.outcome == ConfirmationOutcome.SUCCESS:
            self._complete_phase(execution, pending, announce=False)
            if pending.phase == TransactionPhase.EXECUTE:
                await self._persist(execution, pending.invoice_index, announce=False)
        elif result.outcome == ConfirmationOutcome.FAILED:
            execution.pending = None
            execution.error = OnChainFailure(pending.submission_id, result.error or "unknown error")
        return result

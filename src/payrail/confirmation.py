"""
Transaction finality polling.

Features:
- Fixed-interval status polling bounded by poll count and elapsed time
- Three terminal outcomes: success, on-chain failure, timeout
- Backoff on transient RPC errors while polling
- Caller-driven re-checks of submissions that timed out
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from .constants import ConfirmationDefaults
from .exceptions import ConfirmationTimeout, OnChainFailure, RPCError
from .models import SubmissionState
from .ports import LedgerClient

if TYPE_CHECKING:
    from .config import ConfirmationSettings

logger = logging.getLogger(__name__)


class ConfirmationOutcome(str, Enum):
    """Terminal outcome of waiting on a submission."""
    SUCCESS = "success"  # Ledger reports the transaction succeeded
    FAILED = "failed"  # Accepted but execution failed; never retried
    TIMEOUT = "timeout"  # No terminal status within budget; may still land


@dataclass(frozen=True)
class ConfirmationConfig:
    max_polls: int = ConfirmationDefaults.MAX_POLLS
    timeout_seconds: float = ConfirmationDefaults.TIMEOUT_SECONDS
    poll_interval_seconds: float = ConfirmationDefaults.POLL_INTERVAL_SECONDS

    @classmethod
    def from_settings(cls, settings: "ConfirmationSettings") -> "ConfirmationConfig":
        return cls(
            max_polls=settings.max_polls,
            timeout_seconds=settings.timeout_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
        )


@dataclass(frozen=True)
class ConfirmationResult:
    submission_id: str
    outcome: ConfirmationOutcome
    polls: int
    elapsed_seconds: float
    error: Optional[str] = None
    slot: Optional[int] = None

    @property
    def confirmed(self) -> bool:
        return self.outcome == ConfirmationOutcome.SUCCESS


class ConfirmationEngine:
    """Waits for a submitted transaction to reach a terminal status."""

    def __init__(
        self,
        ledger: LedgerClient,
        config: Optional[ConfirmationConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ledger = ledger
        self._config = config or ConfirmationConfig()
        self._clock = clock

    @property
    def config(self) -> ConfirmationConfig:
        return self._config

    async def wait(self, submission_id: str) -> ConfirmationResult:
        """Poll until success, failure, or the budget runs out.

        Never raises for ledger outcomes; transient RPC errors count as
        polls and back off exponentially.
        """
        config = self._config
        started = self._clock()
        polls = 0
        consecutive_errors = 0

        while True:
            polls += 1
            try:
                status = await self._ledger.get_status(submission_id)
            except RPCError as e:
                consecutive_errors += 1
                logger.warning(
                    f"Status poll {polls}/{config.max_polls} for {submission_id} failed: {e}"
                )
                status = None
            else:
                consecutive_errors = 0

            elapsed = self._clock() - started
            if status is not None and status.state == SubmissionState.SUCCESS:
                logger.info(f"Transaction {submission_id} confirmed after {polls} polls")
                return ConfirmationResult(
                    submission_id, ConfirmationOutcome.SUCCESS, polls, elapsed, slot=status.slot
                )
            if status is not None and status.state == SubmissionState.FAILED:
                logger.error(f"Transaction {submission_id} failed on-chain: {status.error}")
                return ConfirmationResult(
                    submission_id,
                    ConfirmationOutcome.FAILED,
                    polls,
                    elapsed,
                    error=status.error or "unknown error",
                    slot=status.slot,
                )

            remaining = config.timeout_seconds - elapsed
            if polls >= config.max_polls or remaining <= 0:
                logger.warning(
                    f"Transaction {submission_id} not confirmed after {polls} polls "
                    f"({elapsed:.1f}s)"
                )
                return ConfirmationResult(
                    submission_id, ConfirmationOutcome.TIMEOUT, polls, elapsed
                )

            delay = config.poll_interval_seconds
            if consecutive_errors:
                delay = delay * (2 ** (consecutive_errors - 1))
            await asyncio.sleep(max(0.0, min(delay, remaining)))

    async def ensure_confirmed(self, submission_id: str) -> ConfirmationResult:
        """Wait and convert non-success outcomes to exceptions.

        Raises:
            OnChainFailure: the transaction executed and failed
            ConfirmationTimeout: outcome still unknown after the budget
        """
        result = await self.wait(submission_id)
        if result.outcome == ConfirmationOutcome.FAILED:
            raise OnChainFailure(submission_id, result.error or "unknown error")
        if result.outcome == ConfirmationOutcome.TIMEOUT:
            raise ConfirmationTimeout(submission_id, result.polls, result.elapsed_seconds)
        return result

    async def recheck(self, submission_id: str) -> ConfirmationResult:
        """Poll a previously timed-out submission with a fresh budget."""
        logger.info(f"Re-checking submission {submission_id}")
        return await self.wait(submission_id)

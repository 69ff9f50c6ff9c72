"""
Retry utilities with exponential backoff.

Only transient failures are retried: an exception is retried when it is an
instance of ``retryable_exceptions`` and, for payrail exceptions, when its
``retryable`` flag is set. Everything else propagates immediately.

Usage:
    from payrail.retry import RetryConfig, retry_async

    config = RetryConfig(max_retries=3, base_delay=0.5)
    signature = await retry_async(ledger.submit, payload, config=config)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, Type, TypeVar

from .constants import RetryDefaults

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) added to delays
        retryable_exceptions: Tuple of exception types that trigger retries
    """

    max_retries: int = RetryDefaults.DEFAULT_MAX_RETRIES
    base_delay: float = RetryDefaults.DEFAULT_BASE_DELAY
    max_delay: float = RetryDefaults.DEFAULT_MAX_DELAY
    exponential_base: float = RetryDefaults.DEFAULT_EXPONENTIAL_BASE
    jitter: float = RetryDefaults.DEFAULT_JITTER
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt number (0-based)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        """Determine if the exception should trigger a retry."""
        if not isinstance(exception, self.retryable_exceptions):
            return False

        return bool(getattr(exception, "retryable", True))


@dataclass
class RetryStats:
    """Statistics about retry execution."""

    attempts: int = 0
    last_exception: Optional[BaseException] = None


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        stats: Statistics about the retry attempts
        original_exception: The last exception that was raised
    """

    def __init__(
        self,
        message: str,
        stats: RetryStats,
        original_exception: BaseException,
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Raises:
        RetryExhausted: If every attempt failed with a retryable error
        Exception: The first non-retryable error, unchanged
    """
    if config is None:
        config = RetryConfig()

    stats = RetryStats()
    last_exception: Optional[BaseException] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        stats.attempts = attempt + 1

        try:
            return await func(*args, **kwargs)

        except Exception as e:
            last_exception = e
            stats.last_exception = e

            if not config.should_retry(e):
                logger.debug(
                    f"Exception {type(e).__name__} is not retryable, "
                    f"raising immediately"
                )
                raise

            if attempt >= config.max_retries:
                break

            delay = config.calculate_delay(attempt)

            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for "
                f"{name} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )

            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for {name}",
        stats=stats,
        original_exception=last_exception,
    ) from last_exception

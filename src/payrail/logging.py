"""
Logging utilities with sensitive data masking and phase timing.

Usage:
    from payrail.logging import PhaseLogger, mask_sensitive_data

    phase_logger = PhaseLogger(__name__)

    async with phase_logger.operation("submit", invoice_number="INV-1") as ctx:
        ctx.metadata["signature"] = signature

    logger.info("Record stored", extra=mask_sensitive_data(record.to_dict(include_key=True)))
"""
from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Sequence

from .constants import LoggingConfig


# =============================================================================
# Sensitive Data Masking
# =============================================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a value, showing only its first and last characters."""
    if not value or len(value) <= show_chars * 2:
        return LoggingConfig.MASK_PATTERN

    return f"{value[:show_chars]}...{value[-show_chars:]}"


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates secret material."""
    key_lower = key.lower().replace("-", "_")
    if key in LoggingConfig.SENSITIVE_FIELDS or key_lower in LoggingConfig.SENSITIVE_FIELDS:
        return True
    return any(
        sensitive in key_lower
        for sensitive in ("secret", "password", "private", "credential")
    )


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    mask_pattern: str = LoggingConfig.MASK_PATTERN,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Recursively mask sensitive values in a data structure.

    Returns a copy; the input is not modified.
    """
    if _depth > _max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if isinstance(key, str) and is_sensitive_key(key):
                result[key] = mask_pattern
            elif additional_fields and key in additional_fields:
                result[key] = mask_pattern
            else:
                result[key] = mask_sensitive_data(
                    value,
                    additional_fields,
                    mask_pattern,
                    _depth + 1,
                    _max_depth,
                )
        return result

    if isinstance(data, (list, tuple)):
        return type(data)(
            mask_sensitive_data(item, additional_fields, mask_pattern, _depth + 1, _max_depth)
            for item in data
        )

    if isinstance(data, str) and len(data) > LoggingConfig.MAX_LOG_MESSAGE_LENGTH:
        return data[: LoggingConfig.MAX_LOG_MESSAGE_LENGTH] + "...[truncated]"

    return data


def mask_address(address: Optional[str]) -> str:
    """Shorten an address for log lines."""
    if not address:
        return "<none>"
    return mask_value(address, show_chars=4) if len(address) > 12 else address


# =============================================================================
# Phase operation logging
# =============================================================================

@dataclass
class OperationContext:
    """Timing and outcome of one orchestration step."""

    operation_id: str
    operation: str
    invoice_number: Optional[str] = None
    phase: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation": self.operation,
            "invoice_number": self.invoice_number,
            "phase": self.phase,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": mask_sensitive_data(self.metadata),
        }


class PhaseLogger:
    """Logger that times orchestration steps and emits structured extras."""

    def __init__(self, name: str) -> None:
        self._logger = logging.getLogger(name)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    @asynccontextmanager
    async def operation(
        self,
        operation: str,
        *,
        invoice_number: Optional[str] = None,
        phase: Optional[str] = None,
        **metadata: Any,
    ) -> AsyncIterator[OperationContext]:
        """
        Track one step.

        Usage:
            async with phase_logger.operation("confirm", phase="create") as ctx:
                ctx.metadata["polls"] = result.polls
        """
        ctx = OperationContext(
            operation_id=f"op_{uuid.uuid4().hex[:12]}",
            operation=operation,
            invoice_number=invoice_number,
            phase=phase,
            metadata=metadata,
        )
        self._logger.debug(
            f"Starting {operation} for invoice {invoice_number} ({phase or '-'})",
            extra={"operation": ctx.to_dict()},
        )
        try:
            yield ctx
            ctx.complete(success=True)
        except Exception as e:
            ctx.complete(success=False, error=str(e))
            raise
        finally:
            level = logging.INFO if ctx.success else logging.WARNING
            status = "completed" if ctx.success else "failed"
            self._logger.log(
                level,
                f"{operation} {status} for invoice {invoice_number} "
                f"({phase or '-'}) in {ctx.duration_ms or 0:.1f}ms",
                extra={"operation": ctx.to_dict()},
            )

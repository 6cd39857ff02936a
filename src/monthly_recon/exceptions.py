"""Error taxonomy for the reconciliation and closing engine.

``ValidationError`` and ``NotFoundError`` are recoverable and surfaced to the
operator verbatim. ``IntegrityError`` signals a broken invariant and is never
swallowed inside the package. ``PersistenceError`` wraps workbook I/O failures
and is propagated to the caller without retries.
"""

from __future__ import annotations

from typing import Optional


class ReconciliationError(Exception):
    """Base class for every domain error raised by ``monthly_recon``."""


class ValidationError(ReconciliationError):
    """Raised when a requested operation violates a business rule."""


class PendingDivergencesError(ValidationError):
    """Raised when closing is attempted while divergences are outstanding."""

    def __init__(self, period: str, pending_count: int) -> None:
        self.period = period
        self.pending_count = pending_count
        super().__init__(
            f"There are {pending_count} pending divergences for {period}. "
            "The period cannot be closed."
        )


class PeriodClosedError(ValidationError):
    """Raised when an edit targets a period whose closing status is CLOSED."""

    def __init__(self, period: str) -> None:
        self.period = period
        super().__init__(f"Period {period} is closed; reopen it before editing")


class LedgerLockedError(ValidationError):
    """Raised when locked ledger entries would be rewritten or removed."""

    def __init__(self, period: str, locked_count: int) -> None:
        self.period = period
        self.locked_count = locked_count
        super().__init__(
            f"Ledger for {period} has {locked_count} locked entries; "
            "reopen the period before re-deriving it"
        )


class NotFoundError(ReconciliationError):
    """Raised when a period, report, or closing state does not exist."""


class IntegrityError(ReconciliationError):
    """Raised when an internal invariant is broken; never expected at runtime."""


class PersistenceError(ReconciliationError):
    """Raised when the backing store cannot be read or written."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        super().__init__(message)


__all__ = [
    "ReconciliationError",
    "ValidationError",
    "PendingDivergencesError",
    "PeriodClosedError",
    "LedgerLockedError",
    "NotFoundError",
    "IntegrityError",
    "PersistenceError",
]

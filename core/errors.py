"""
Error taxonomy for the extremum engine.

TransientFetchError is the only retryable kind. Everything else is either
degraded around (DataUnavailable), counted per entry (InvariantViolation,
PersistenceError, FatalConfigError) or escapes to the orchestrator.
"""

from typing import Optional


class TrackerError(Exception):
    """Base class for all tracker errors."""


class TransientFetchError(TrackerError):
    """Rate limit, timeout or upstream 5xx. Safe to retry."""

    def __init__(self, message: str, status: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class DataUnavailable(TrackerError):
    """No pool or no candles for a token."""


class InvariantViolation(TrackerError):
    """A computed record breaks an ATH/drawdown invariant."""


class PersistenceError(TrackerError):
    """Write to the store failed for one entry."""


class FatalConfigError(TrackerError):
    """Malformed entry (e.g. no entry price). Skipped, never retried."""

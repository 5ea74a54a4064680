"""Domain exceptions raised by the ledger, progression and rate-limit layers.

HTTP mapping lives in ``crolars.middleware.error_handler``.
"""

from __future__ import annotations

from datetime import datetime


class GamificationError(Exception):
    """Base class for all domain errors."""

    code = "gamification_error"


class InsufficientFunds(GamificationError):
    """Debit larger than the current balance. Nothing was recorded."""

    code = "insufficient_funds"

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Insufficient Crolars: required {required}, available {available}")


class InvalidAmount(GamificationError):
    """Non-positive or non-integer amount, or an unknown transaction kind."""

    code = "invalid_amount"


class InvalidTransition(GamificationError):
    """State change not allowed from the current state (e.g. claiming an unearned achievement)."""

    code = "invalid_transition"


class NotFound(GamificationError):
    code = "not_found"


class RateLimited(GamificationError):
    """Caller exceeded a rate-limit rule; retry after ``reset_at``."""

    code = "rate_limited"

    def __init__(self, reset_at: datetime, limit: int, retry_after: int) -> None:
        self.reset_at = reset_at
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded, retry after {retry_after}s")


class NotificationDeliveryFailure(GamificationError):
    """Live push or cache write failed. Logged, never propagated to the mutation."""

    code = "notification_delivery_failure"


class StorageUnavailable(GamificationError):
    code = "storage_unavailable"


class LedgerOutcomeUnknown(GamificationError):
    """A ledger call timed out; the caller must re-query the balance before retrying."""

    code = "ledger_outcome_unknown"

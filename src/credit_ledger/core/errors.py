"""
Ledger error taxonomy.

Every error carries the numbers a caller needs to render a message without a
follow-up query.
"""

from typing import Any


class LedgerError(Exception):
    """Base class for credit ledger failures."""
    pass


class InvalidAmount(LedgerError):
    """Raised when a non-positive or non-integer amount reaches the ledger."""

    def __init__(self, amount: Any, reason: str = "amount must be a positive integer"):
        self.amount = amount
        super().__init__(f"Invalid amount {amount!r}: {reason}")


class InsufficientCredits(LedgerError):
    """Raised when a debit asks for more credits than the user holds."""

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available} "
            f"(need {self.shortfall} more)."
        )

    @property
    def shortfall(self) -> int:
        return max(0, self.required - self.available)


class LockTimeout(LedgerError):
    """Raised when a per-user critical section could not be entered in time."""

    def __init__(self, key: str, timeout_seconds: float):
        self.key = key
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Could not acquire lock {key!r} within {timeout_seconds:.2f}s")


class PlanNotFound(LedgerError):
    """Raised when a subscription references a plan the catalog does not know."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Subscription plan not found: {plan_id}")


class SubscriptionNotFound(LedgerError):
    """Raised when an operation needs an active subscription and there is none."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No active subscription for user: {user_id}")

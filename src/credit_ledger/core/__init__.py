"""
Credit Ledger - Core Module

Balance engine, expiration policy and advisory locks. The entitlement
grantor depends on the billing plan catalog and is imported from
``credit_ledger.core.entitlement`` directly.
"""

from .errors import (
    LedgerError,
    InvalidAmount,
    InsufficientCredits,
    LockTimeout,
    PlanNotFound,
    SubscriptionNotFound,
)
from .expiration import BalanceSnapshot, ExpirationPolicy, add_months
from .balance import BalanceEngine, DebitResult
from .locks import AdvisoryLock, NamedLockRegistry

__all__ = [
    "LedgerError",
    "InvalidAmount",
    "InsufficientCredits",
    "LockTimeout",
    "PlanNotFound",
    "SubscriptionNotFound",
    "BalanceSnapshot",
    "ExpirationPolicy",
    "add_months",
    "BalanceEngine",
    "DebitResult",
    "AdvisoryLock",
    "NamedLockRegistry",
]

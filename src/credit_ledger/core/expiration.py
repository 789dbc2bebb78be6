"""
Credit Expiration Policy

Unused balances expire a fixed number of calendar months after the user's
last ledger activity. Activity is the later of the most recent ``usage`` entry
and the most recent credit grant (``purchase``, ``subscription_credit``,
``bonus``). Refunds and earlier expirations do not move the clock.

The policy runs on every balance read and before every debit or credit. When
it finds a stale balance it zeroes the row with a conditional update and appends one
``expiration`` entry; concurrent readers of the same stale state cannot
record a second one.
"""

import calendar
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
import structlog

from ..persistence.database import Transaction
from ..persistence.models import TransactionRecord, TransactionType
from ..persistence.repository import BalanceRepository, TransactionRepository

logger = structlog.get_logger()

DEBIT_ACTIVITY_TYPES = [TransactionType.USAGE]
GRANT_ACTIVITY_TYPES = [
    TransactionType.PURCHASE,
    TransactionType.SUBSCRIPTION_CREDIT,
    TransactionType.BONUS,
]


def add_months(value: datetime, months: int) -> datetime:
    """
    Calendar-month arithmetic.

    The day of month is kept where it exists and clamped to the last day
    otherwise (Jan 31 + 1 month = Feb 28/29).
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


@dataclass
class BalanceSnapshot:
    """Balance as seen after the expiration rule has been applied."""
    user_id: str
    amount: int
    expires_at: Optional[datetime] = None
    expires_in_days: Optional[int] = None
    expired_amount: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "amount": self.amount,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "expires_in_days": self.expires_in_days,
        }


class ExpirationPolicy:
    """
    Derives a balance's expiration date from ledger history.

    Usage:
        policy = ExpirationPolicy(balances, transactions, months=2)
        with db.transaction() as tx:
            snapshot = policy.apply(tx, user_id, now)
    """

    DEFAULT_MONTHS = 2

    def __init__(
        self,
        balances: BalanceRepository,
        transactions: TransactionRepository,
        months: Optional[int] = None,
    ):
        self.balances = balances
        self.transactions = transactions
        self.months = months if months is not None else int(
            os.environ.get("CREDIT_EXPIRATION_MONTHS", self.DEFAULT_MONTHS)
        )
        if self.months < 1:
            raise ValueError("Expiration window must be at least one month")

    def base_date(self, tx: Transaction, user_id: str) -> Optional[datetime]:
        """Timestamp the expiration window is measured from."""
        last_debit = self.transactions.latest_of_types(tx, user_id, DEBIT_ACTIVITY_TYPES)
        last_grant = self.transactions.latest_of_types(tx, user_id, GRANT_ACTIVITY_TYPES)

        candidates = [t.created_at for t in (last_debit, last_grant) if t is not None]
        return max(candidates) if candidates else None

    def apply(self, tx: Transaction, user_id: str, now: datetime) -> BalanceSnapshot:
        """
        Evaluate (and if due, perform) expiration for one user.

        Must run inside the caller's transaction so the read and the
        expiration write are atomic with whatever follows.
        """
        record = self.balances.get(tx, user_id, for_update=True)
        amount = record.amount if record else 0

        if amount <= 0:
            return BalanceSnapshot(user_id=user_id, amount=amount)

        base = self.base_date(tx, user_id)
        if base is None:
            return BalanceSnapshot(user_id=user_id, amount=amount)

        expires_at = add_months(base, self.months)
        if now <= expires_at:
            return BalanceSnapshot(
                user_id=user_id,
                amount=amount,
                expires_at=expires_at,
                expires_in_days=max(0, (expires_at - now).days),
            )

        if not self.balances.zero_if_unchanged(tx, user_id, amount, now):
            # Another writer changed the row first; report what is stored now
            current = self.balances.get(tx, user_id)
            return BalanceSnapshot(user_id=user_id, amount=current.amount if current else 0)

        self.transactions.append(tx, TransactionRecord(
            user_id=user_id,
            type=TransactionType.EXPIRATION,
            amount=-amount,
            description=f"Credits expired after {self.months} months without activity",
            created_at=now,
        ))

        logger.info(
            "credits_expired",
            user_id=user_id,
            amount=amount,
            last_activity=base.isoformat(),
            expired_at=expires_at.isoformat(),
        )

        return BalanceSnapshot(user_id=user_id, amount=0, expired_amount=amount)

"""
Entitlement Grantor

Grants a plan's monthly credit allotment at most once per billing period.

Callers may invoke ``ensure_monthly_credits`` on every request; concurrent
callers for the same user are serialized by a transaction-scoped advisory
lock, and the existence check plus the credit happen inside that lock.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import structlog

from ..billing.plans import InMemorySubscriptionCatalog, SubscriptionCatalog, SubscriptionPeriod
from ..persistence.database import Database, get_database
from ..persistence.models import RelatedEntity, TransactionType, utc_now
from .balance import BalanceEngine, Clock
from .locks import AdvisoryLock

logger = structlog.get_logger()


@dataclass
class GrantResult:
    """Outcome of a monthly-credit check."""
    granted: bool
    amount: int
    balance: int
    period: SubscriptionPeriod
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granted": self.granted,
            "amount": self.amount,
            "balance": self.balance,
            "transaction_id": self.transaction_id,
            "plan_id": self.period.plan.id,
            "period_start": self.period.period_start.isoformat(),
            "period_end": self.period.period_end.isoformat(),
        }


class EntitlementGrantor:
    """
    Idempotent monthly credit grants.

    Usage:
        grantor = EntitlementGrantor(catalog=catalog)
        result = grantor.ensure_monthly_credits(user_id)
        if result.granted:
            ...
    """

    LOCK_PREFIX = "monthly-credits"

    def __init__(
        self,
        db: Optional[Database] = None,
        engine: Optional[BalanceEngine] = None,
        catalog: Optional[SubscriptionCatalog] = None,
        lock: Optional[AdvisoryLock] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db or (engine.db if engine else get_database())
        self.clock = clock or (engine.clock if engine else utc_now)
        self.engine = engine or BalanceEngine(self.db, clock=self.clock)
        self.catalog = catalog or InMemorySubscriptionCatalog()
        self.lock = lock or AdvisoryLock()

    def ensure_monthly_credits(self, user_id: str) -> GrantResult:
        now = self.clock()
        period = self.catalog.resolve_period(user_id, now)
        amount = period.credits_per_month

        if amount <= 0:
            logger.debug("monthly_credits_not_applicable", user_id=user_id, plan_id=period.plan.id)
            return GrantResult(granted=False, amount=0, balance=self._stored_balance(user_id), period=period)

        record = None
        with self.lock.transaction(self.db, f"{self.LOCK_PREFIX}:{user_id}") as tx:
            already_granted = self.engine.transactions.exists_in_window(
                tx,
                user_id,
                TransactionType.SUBSCRIPTION_CREDIT,
                period.period_start,
                period.period_end,
            )
            if not already_granted:
                related = (
                    RelatedEntity(period.subscription_id, "subscription")
                    if period.subscription_id else None
                )
                record = self.engine.apply_credit(
                    tx,
                    user_id,
                    amount,
                    f"Monthly credits from {period.plan.display_name}",
                    related,
                    TransactionType.SUBSCRIPTION_CREDIT,
                )

            stored = self.engine.balances.get(tx, user_id)
            balance = stored.amount if stored else 0

        if record is None:
            logger.debug(
                "monthly_credits_already_granted",
                user_id=user_id,
                period_start=period.period_start.isoformat(),
            )
            return GrantResult(granted=False, amount=0, balance=balance, period=period)

        logger.info(
            "monthly_credits_granted",
            user_id=user_id,
            amount=amount,
            plan_id=period.plan.id,
            subscription_id=period.subscription_id,
            period_start=period.period_start.isoformat(),
            balance=balance,
        )
        return GrantResult(
            granted=True,
            amount=amount,
            balance=balance,
            period=period,
            transaction_id=record.transaction_id,
        )

    def _stored_balance(self, user_id: str) -> int:
        with self.db.transaction() as tx:
            stored = self.engine.balances.get(tx, user_id)
        return stored.amount if stored else 0

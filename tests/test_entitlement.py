"""
Tests for Monthly Entitlement Grants

One grant per user per billing period, whatever the number of callers.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
import sqlite3
import threading
import time

import pytest
from credit_ledger.billing.plans import SubscriptionPlan
from credit_ledger.core.balance import BalanceEngine
from credit_ledger.core.entitlement import EntitlementGrantor
from credit_ledger.core.errors import LockTimeout
from credit_ledger.core.locks import AdvisoryLock, NamedLockRegistry
from credit_ledger.persistence.database import Database
from credit_ledger.persistence.models import RelatedEntity, TransactionType
from credit_ledger.persistence.repository import TransactionRepository


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def creator_catalog(catalog):
    catalog.set_user_role("creator-1", "creator")
    catalog.add_plan(SubscriptionPlan(
        id="creator_plus",
        name="creator_plus",
        display_name="Plus",
        type="creator",
        price="49.00",
        features={"courses": 10, "videos": 100, "credits_per_month": 10, "commission_rate": 0.1},
    ))
    return catalog


@pytest.fixture
def grantor(engine, creator_catalog):
    return EntitlementGrantor(engine=engine, catalog=creator_catalog)


class TestMonthlyGrant:
    """Grant semantics for a single caller."""

    def test_free_creator_gets_allotment(self, grantor):
        """Creators without a subscription receive the free plan's credits."""
        result = grantor.ensure_monthly_credits("creator-1")

        assert result.granted is True
        assert result.amount == 5
        assert result.balance == 5
        assert result.period.period_start == utc(2025, 3, 1)
        assert result.period.period_end == utc(2025, 3, 31, 23, 59, 59, 999999)

    def test_second_call_is_noop(self, grantor):
        """Repeating the call within the period grants nothing."""
        grantor.ensure_monthly_credits("creator-1")
        result = grantor.ensure_monthly_credits("creator-1")

        assert result.granted is False
        assert result.amount == 0
        assert result.balance == 5

    def test_zero_credit_plan_is_noop(self, grantor, db):
        """Students on the free plan have no monthly allotment."""
        result = grantor.ensure_monthly_credits("student-1")

        assert result.granted is False
        assert result.balance == 0
        assert TransactionRepository(db).count_for_user("student-1") == 0

    def test_next_calendar_month_grants_again(self, grantor, clock):
        """A new calendar month is a new period."""
        grantor.ensure_monthly_credits("creator-1")

        clock.set(utc(2025, 4, 2))
        result = grantor.ensure_monthly_credits("creator-1")

        assert result.granted is True
        assert result.balance == 10

    def test_subscription_grant_references_subscription(self, grantor, creator_catalog, clock):
        """Paid-plan grants point at the subscription that earned them."""
        subscription = creator_catalog.subscribe("creator-1", "creator_plus", period_start=clock())

        result = grantor.ensure_monthly_credits("creator-1")

        assert result.granted is True
        assert result.amount == 10
        entry = grantor.engine.transactions.get(result.transaction_id)
        assert entry.type == TransactionType.SUBSCRIPTION_CREDIT
        assert entry.related_entity == RelatedEntity(subscription.id, "subscription")
        assert entry.description == "Monthly credits from Plus"

    def test_renewed_period_grants_again(self, grantor, creator_catalog, clock):
        """Renewal opens the next period and its allotment."""
        creator_catalog.subscribe("creator-1", "creator_plus", period_start=clock())
        grantor.ensure_monthly_credits("creator-1")

        creator_catalog.renew("creator-1")
        clock.set(utc(2025, 4, 20))
        result = grantor.ensure_monthly_credits("creator-1")

        assert result.granted is True
        assert result.period.period_start == utc(2025, 4, 15, 12, 0)
        assert result.balance == 20

    def test_grant_on_stale_balance_expires_old_credits(self, grantor, engine, clock, db):
        """The monthly grant does not revive credits that were already due to expire."""
        clock.set(utc(2024, 12, 15, 12, 0))
        engine.credit("creator-1", 100, "Credit purchase")

        clock.set(utc(2025, 3, 15, 12, 0))
        result = grantor.ensure_monthly_credits("creator-1")

        assert result.granted is True
        assert result.balance == 5
        transactions = TransactionRepository(db)
        assert transactions.count_for_user("creator-1", TransactionType.EXPIRATION) == 1
        assert transactions.sum_for_user("creator-1") == 5
        assert engine.get_balance("creator-1").amount == 5


class TestConcurrentGrants:
    """Idempotency under concurrent callers."""

    def test_exactly_one_grant(self, grantor, db):
        """Eight simultaneous calls produce a single ledger entry."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: grantor.ensure_monthly_credits("creator-1"), range(8)))

        assert sum(1 for r in results if r.granted) == 1
        assert TransactionRepository(db).count_for_user("creator-1", TransactionType.SUBSCRIPTION_CREDIT) == 1
        assert grantor.engine.get_balance("creator-1").amount == 5

    def test_lock_timeout(self, engine, creator_catalog, db):
        """A held lock makes the caller give up after the bounded wait."""
        registry = NamedLockRegistry()
        grantor = EntitlementGrantor(
            engine=engine,
            catalog=creator_catalog,
            lock=AdvisoryLock(timeout_seconds=0.1, registry=registry),
        )

        assert registry.acquire("monthly-credits:creator-1", timeout=1)
        try:
            with pytest.raises(LockTimeout) as exc_info:
                grantor.ensure_monthly_credits("creator-1")
        finally:
            registry.release("monthly-credits:creator-1")

        assert exc_info.value.key == "monthly-credits:creator-1"
        assert TransactionRepository(db).count_for_user("creator-1") == 0
        assert len(registry) == 0

    def test_timeout_bounds_wait_for_database_writer(self, engine, creator_catalog, temp_db, db):
        """A writer on another connection cannot hold the caller past the lock timeout."""
        registry = NamedLockRegistry()
        grantor = EntitlementGrantor(
            engine=engine,
            catalog=creator_catalog,
            lock=AdvisoryLock(timeout_seconds=0.2, registry=registry),
        )

        other = sqlite3.connect(temp_db, isolation_level=None)
        other.execute("BEGIN IMMEDIATE")
        started = time.monotonic()
        try:
            with pytest.raises(LockTimeout):
                grantor.ensure_monthly_credits("creator-1")
            waited = time.monotonic() - started
        finally:
            other.execute("ROLLBACK")
            other.close()

        assert waited < 2
        assert len(registry) == 0
        assert grantor.ensure_monthly_credits("creator-1").granted is True

    def test_timeout_bounds_wait_for_in_memory_writer(self, clock, creator_catalog):
        """Another thread inside a transaction on a :memory: database does not block forever."""
        memory = Database("sqlite:///:memory:")
        memory.initialize()
        grantor = EntitlementGrantor(
            engine=BalanceEngine(memory, clock=clock),
            catalog=creator_catalog,
            lock=AdvisoryLock(timeout_seconds=0.2, registry=NamedLockRegistry()),
        )
        inside, done = threading.Event(), threading.Event()

        def hold_transaction():
            with memory.transaction():
                inside.set()
                done.wait(5)

        worker = threading.Thread(target=hold_transaction)
        worker.start()
        try:
            assert inside.wait(5)
            with pytest.raises(LockTimeout):
                grantor.ensure_monthly_credits("creator-1")
        finally:
            done.set()
            worker.join()

        assert grantor.ensure_monthly_credits("creator-1").granted is True
        memory.close()


class TestEndToEnd:
    """Purchase, spend and grant in one period."""

    def test_purchase_spend_grant(self, grantor, creator_catalog, engine, clock):
        """0 -> +5 -> -3 -> grant +10 -> 12, and a second grant changes nothing."""
        assert engine.get_balance("creator-1").amount == 0

        engine.credit("creator-1", 5, "Credit purchase", RelatedEntity("pay-1", "payment"))
        engine.debit("creator-1", 3, "Video upload (3 minutes)", RelatedEntity("video-1", "video"))

        creator_catalog.subscribe("creator-1", "creator_plus", period_start=clock())
        first = grantor.ensure_monthly_credits("creator-1")
        second = grantor.ensure_monthly_credits("creator-1")

        assert first.granted is True
        assert first.balance == 12
        assert second.granted is False
        assert engine.get_balance("creator-1").amount == 12
        assert engine.transactions.sum_for_user("creator-1") == 12

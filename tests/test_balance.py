"""
Tests for the Balance Engine

Conservation of credits, no overdraft under concurrency, and ledger history.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
import random

import pytest
from credit_ledger.core.balance import BalanceEngine, validate_amount
from credit_ledger.core.errors import InsufficientCredits, InvalidAmount
from credit_ledger.persistence.models import RelatedEntity, TransactionType
from credit_ledger.persistence.repository import TransactionRepository


class TestValidation:
    """Amounts are checked before the database is touched."""

    @pytest.mark.parametrize("amount", [0, -1, 1.5, "10", True, None])
    def test_rejects_invalid_amounts(self, amount):
        """Only positive integers are valid credit amounts."""
        with pytest.raises(InvalidAmount):
            validate_amount(amount)

    def test_credit_rejects_zero(self, engine):
        """A zero credit fails without creating a ledger entry."""
        with pytest.raises(InvalidAmount):
            engine.credit("user-1", 0, "Nothing")

        assert engine.get_transactions("user-1") == []

    def test_debit_rejects_negative(self, engine):
        """A negative debit would be a credit in disguise."""
        with pytest.raises(InvalidAmount):
            engine.debit("user-1", -5, "Sneaky")

    def test_credit_rejects_debit_side_type(self, engine):
        """Usage and expiration entries cannot be written through credit()."""
        with pytest.raises(InvalidAmount):
            engine.credit("user-1", 5, "Wrong type", transaction_type=TransactionType.USAGE)


class TestCreditAndDebit:
    """Basic balance movements."""

    def test_new_user_has_zero_balance(self, engine):
        """Users without history read as zero and never expire."""
        snapshot = engine.get_balance("nobody")

        assert snapshot.amount == 0
        assert snapshot.expires_at is None

    def test_credit_returns_new_balance(self, engine):
        """Credit adds to the stored balance."""
        assert engine.credit("user-1", 10, "Purchase") == 10
        assert engine.credit("user-1", 5, "Bonus", transaction_type=TransactionType.BONUS) == 15

    def test_debit_returns_result(self, engine):
        """Debit reports the entry it wrote and the remaining balance."""
        engine.credit("user-1", 10, "Purchase")
        result = engine.debit("user-1", 3, "Video upload", RelatedEntity("video-1", "video"))

        assert result.amount == 3
        assert result.balance == 7

        entry = engine.transactions.get(result.transaction_id)
        assert entry.type == TransactionType.USAGE
        assert entry.amount == -3
        assert entry.related_entity == RelatedEntity("video-1", "video")

    def test_debit_insufficient_raises(self, engine):
        """Overdraft attempts fail with the numbers needed for a message."""
        engine.credit("user-1", 2, "Purchase")

        with pytest.raises(InsufficientCredits) as exc_info:
            engine.debit("user-1", 5, "Too much")

        error = exc_info.value
        assert error.required == 5
        assert error.available == 2
        assert error.shortfall == 3
        assert "Required: 5" in str(error)
        assert engine.get_balance("user-1").amount == 2

    def test_failed_debit_writes_no_entry(self, engine):
        """A rejected debit leaves the ledger untouched."""
        engine.credit("user-1", 1, "Purchase")

        with pytest.raises(InsufficientCredits):
            engine.debit("user-1", 2, "Too much")

        assert len(engine.get_transactions("user-1")) == 1

    def test_debit_entire_balance(self, engine):
        """Spending exactly the balance is allowed."""
        engine.credit("user-1", 4, "Purchase")

        assert engine.debit("user-1", 4, "All of it").balance == 0


class TestConservation:
    """Stored balance always equals the sum of the ledger."""

    def test_sum_matches_balance(self, engine, db):
        """Mixed operations keep balance and ledger in agreement."""
        engine.credit("user-1", 20, "Purchase")
        engine.debit("user-1", 7, "Quiz")
        engine.credit("user-1", 3, "Bonus", transaction_type=TransactionType.BONUS)
        engine.debit("user-1", 1, "AI question")

        ledger_sum = TransactionRepository(db).sum_for_user("user-1")
        assert ledger_sum == 15
        assert engine.get_balance("user-1").amount == ledger_sum

    def test_users_are_isolated(self, engine):
        """One user's operations never touch another's balance."""
        engine.credit("user-1", 10, "Purchase")
        engine.credit("user-2", 3, "Purchase")
        engine.debit("user-1", 10, "Spend")

        assert engine.get_balance("user-1").amount == 0
        assert engine.get_balance("user-2").amount == 3

    @pytest.mark.parametrize("seed", range(8))
    def test_random_sequences_conserve(self, engine, clock, db, seed):
        """Random credits, debits, refunds and idle gaps never split balance from ledger."""
        rng = random.Random(seed)
        transactions = TransactionRepository(db)
        debits = []

        for step in range(60):
            roll = rng.random()
            if roll < 0.4:
                engine.credit("user-1", rng.randint(1, 50), f"Credit {step}")
            elif roll < 0.8:
                try:
                    debits.append(engine.debit("user-1", rng.randint(1, 40), f"Debit {step}").transaction_id)
                except InsufficientCredits as e:
                    assert e.available < e.required
            elif roll < 0.9 and debits:
                engine.refund("user-1", debits.pop(rng.randrange(len(debits))))
            else:
                clock.set(clock() + timedelta(days=rng.randint(1, 90)))

            snapshot = engine.get_balance("user-1")
            assert snapshot.amount >= 0
            assert snapshot.amount == transactions.sum_for_user("user-1")


class TestConcurrency:
    """Concurrent debits against one balance."""

    def test_no_overdraft_under_concurrent_debits(self, db, clock):
        """Ten debits of 3 against 10 credits: exactly three succeed."""
        engine = BalanceEngine(db, clock=clock)
        engine.credit("user-1", 10, "Purchase")

        def spend(_):
            try:
                engine.debit("user-1", 3, "Concurrent spend")
                return True
            except InsufficientCredits:
                return False

        with ThreadPoolExecutor(max_workers=10) as pool:
            outcomes = list(pool.map(spend, range(10)))

        assert outcomes.count(True) == 3
        assert engine.get_balance("user-1").amount == 1
        assert TransactionRepository(db).sum_for_user("user-1") == 1

    def test_concurrent_credits_all_land(self, db, clock):
        """No credit is lost when many land at once."""
        engine = BalanceEngine(db, clock=clock)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: engine.credit("user-1", 2, f"Credit {i}"), range(20)))

        assert engine.get_balance("user-1").amount == 40


class TestHistory:
    """Ledger listing and refunds."""

    def test_newest_first(self, engine, clock):
        """Entries come back in reverse chronological order."""
        engine.credit("user-1", 10, "First")
        clock.set(clock() + timedelta(minutes=1))
        engine.debit("user-1", 2, "Second")
        clock.set(clock() + timedelta(minutes=1))
        engine.credit("user-1", 1, "Third", transaction_type=TransactionType.BONUS)

        descriptions = [t.description for t in engine.get_transactions("user-1")]
        assert descriptions == ["Third", "Second", "First"]

    def test_same_timestamp_ordered_by_insertion(self, engine):
        """Entries written in the same instant still list newest first."""
        engine.credit("user-1", 1, "a")
        engine.credit("user-1", 1, "b")
        engine.credit("user-1", 1, "c")

        descriptions = [t.description for t in engine.get_transactions("user-1")]
        assert descriptions == ["c", "b", "a"]

    def test_pagination(self, engine):
        """limit/offset page through history."""
        for i in range(5):
            engine.credit("user-1", 1, f"Credit {i}")

        page = engine.get_transactions("user-1", limit=2, offset=1)
        assert [t.description for t in page] == ["Credit 3", "Credit 2"]

    def test_negative_limit_rejected(self, engine):
        """Negative paging arguments are a caller error."""
        with pytest.raises(ValueError):
            engine.get_transactions("user-1", limit=-1)

    def test_refund_returns_debited_credits(self, engine):
        """A refund credits the debited amount and references the debit."""
        engine.credit("user-1", 10, "Purchase")
        debit = engine.debit("user-1", 4, "Failed upload")

        balance = engine.refund("user-1", debit.transaction_id)

        assert balance == 10
        latest = engine.get_transactions("user-1", limit=1)[0]
        assert latest.type == TransactionType.REFUND
        assert latest.amount == 4
        assert latest.related_entity == RelatedEntity(debit.transaction_id, "transaction")

    def test_refund_of_foreign_entry_rejected(self, engine):
        """Only the owner's usage entries can be refunded."""
        engine.credit("user-1", 10, "Purchase")
        debit = engine.debit("user-1", 4, "Upload")

        with pytest.raises(InvalidAmount):
            engine.refund("user-2", debit.transaction_id)

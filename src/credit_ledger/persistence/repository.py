"""
Repository Layer for the Credit Ledger

SQL for every persisted entity. Mutating methods take the open
``Transaction`` so that a balance change and its ledger entry always commit
together; no method here opens its own transaction for a write.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
import structlog

from .database import Database, Transaction, get_database
from .models import (
    BalanceRecord,
    TransactionRecord,
    TransactionType,
    UsageCounterRecord,
    to_db_time,
    utc_now,
)

logger = structlog.get_logger()


class BalanceRepository:
    """Repository for balance snapshots."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def ensure(self, tx: Transaction, user_id: str, now: Optional[datetime] = None) -> None:
        """Provision a zero balance row if the user has none."""
        tx.execute(
            """INSERT INTO balances (user_id, amount, updated_at)
               VALUES (?, 0, ?)
               ON CONFLICT (user_id) DO NOTHING""",
            (user_id, to_db_time(now or utc_now()))
        )

    def get(self, tx: Transaction, user_id: str, for_update: bool = False) -> Optional[BalanceRecord]:
        """Read the stored row; ``for_update`` row-locks it on PostgreSQL."""
        query = "SELECT * FROM balances WHERE user_id = ?"
        if for_update and tx.is_postgres:
            query += " FOR UPDATE"
        results = tx.execute(query, (user_id,))
        return BalanceRecord.from_row(results[0]) if results else None

    def increment(self, tx: Transaction, user_id: str, amount: int, now: datetime) -> int:
        """Add ``amount`` atomically and return the new stored amount."""
        tx.execute(
            "UPDATE balances SET amount = amount + ?, updated_at = ? WHERE user_id = ?",
            (amount, to_db_time(now), user_id)
        )
        if tx.rowcount != 1:
            raise RuntimeError(f"Balance row missing for user {user_id}")
        return self._amount(tx, user_id)

    def decrement_if_sufficient(self, tx: Transaction, user_id: str, amount: int, now: datetime) -> Optional[int]:
        """
        Conditionally subtract ``amount``.

        Returns the new stored amount, or None when the balance was lower
        than ``amount`` (nothing is changed in that case).
        """
        tx.execute(
            """UPDATE balances SET amount = amount - ?, updated_at = ?
               WHERE user_id = ? AND amount >= ?""",
            (amount, to_db_time(now), user_id, amount)
        )
        if tx.rowcount != 1:
            return None
        return self._amount(tx, user_id)

    def zero_if_unchanged(self, tx: Transaction, user_id: str, observed_amount: int, now: datetime) -> bool:
        """Zero the balance only if it still holds ``observed_amount``."""
        tx.execute(
            """UPDATE balances SET amount = 0, updated_at = ?
               WHERE user_id = ? AND amount = ?""",
            (to_db_time(now), user_id, observed_amount)
        )
        return tx.rowcount == 1

    def _amount(self, tx: Transaction, user_id: str) -> int:
        results = tx.execute("SELECT amount FROM balances WHERE user_id = ?", (user_id,))
        return int(results[0]["amount"])


class TransactionRepository:
    """Repository for the append-only credit ledger."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def append(self, tx: Transaction, record: TransactionRecord) -> TransactionRecord:
        """Append a ledger entry."""
        tx.execute(
            """INSERT INTO credit_transactions
               (transaction_id, user_id, type, amount, description,
                related_id, related_type, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        logger.debug(
            "ledger_entry_appended",
            transaction_id=record.transaction_id,
            user_id=record.user_id,
            type=record.type.value,
            amount=record.amount,
        )
        return record

    def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        """Get a ledger entry by ID."""
        results = self.db.execute(
            "SELECT * FROM credit_transactions WHERE transaction_id = ?",
            (transaction_id,)
        )
        return TransactionRecord.from_row(results[0]) if results else None

    def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[TransactionRecord]:
        """Ledger entries for a user, newest first."""
        results = self.db.execute(
            """SELECT * FROM credit_transactions WHERE user_id = ?
               ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?""",
            (user_id, limit, offset)
        )
        return [TransactionRecord.from_row(r) for r in results]

    def latest_of_types(self, tx: Transaction, user_id: str, types: List[TransactionType]) -> Optional[TransactionRecord]:
        """Most recent entry among the given types."""
        if not types:
            return None

        placeholders = ",".join(["?" for _ in types])
        results = tx.execute(
            f"""SELECT * FROM credit_transactions
                WHERE user_id = ? AND type IN ({placeholders})
                ORDER BY created_at DESC, seq DESC LIMIT 1""",
            (user_id, *[t.value for t in types])
        )
        return TransactionRecord.from_row(results[0]) if results else None

    def exists_in_window(
        self,
        tx: Transaction,
        user_id: str,
        transaction_type: TransactionType,
        start: datetime,
        end: datetime,
    ) -> bool:
        """Whether an entry of this type was written within [start, end]."""
        results = tx.execute(
            """SELECT 1 AS found FROM credit_transactions
               WHERE user_id = ? AND type = ? AND created_at >= ? AND created_at <= ?
               LIMIT 1""",
            (user_id, transaction_type.value, to_db_time(start), to_db_time(end))
        )
        return bool(results)

    def sum_for_user(self, user_id: str) -> int:
        """Sum of all ledger amounts for a user (audit reconstruction)."""
        results = self.db.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM credit_transactions WHERE user_id = ?",
            (user_id,)
        )
        return int(results[0]["total"]) if results else 0

    def count_for_user(self, user_id: str, transaction_type: Optional[TransactionType] = None) -> int:
        """Count ledger entries, optionally of one type."""
        if transaction_type is None:
            results = self.db.execute(
                "SELECT COUNT(*) AS cnt FROM credit_transactions WHERE user_id = ?",
                (user_id,)
            )
        else:
            results = self.db.execute(
                "SELECT COUNT(*) AS cnt FROM credit_transactions WHERE user_id = ? AND type = ?",
                (user_id, transaction_type.value)
            )
        return int(results[0]["cnt"]) if results else 0


class UsageCounterRepository:
    """Repository for per-period usage counters."""

    # Columns that may be incremented; guards the f-string below
    COUNTER_COLUMNS = frozenset({
        "courses_created",
        "videos_uploaded",
        "quizzes_generated",
        "ai_questions_asked",
    })

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get_or_create(
        self,
        tx: Transaction,
        user_id: str,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> UsageCounterRecord:
        """
        Counter row of the given period, created if absent.

        Rows are keyed by ``(user_id, period_start)``: a period that starts
        mid-month (a new subscription) gets its own fresh row even while an
        older row still covers ``now``.
        """
        results = tx.execute(
            "SELECT * FROM usage_counters WHERE user_id = ? AND period_start = ?",
            (user_id, to_db_time(period_start))
        )
        if results:
            return UsageCounterRecord.from_row(results[0])

        stamp = to_db_time(now)
        tx.execute(
            """INSERT INTO usage_counters
               (user_id, period_start, period_end, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (user_id, period_start) DO NOTHING""",
            (user_id, to_db_time(period_start), to_db_time(period_end), stamp, stamp)
        )
        results = tx.execute(
            "SELECT * FROM usage_counters WHERE user_id = ? AND period_start = ?",
            (user_id, to_db_time(period_start))
        )
        logger.debug("usage_counter_initialized", user_id=user_id, period_start=period_start.isoformat())
        return UsageCounterRecord.from_row(results[0])

    def increment(self, tx: Transaction, counter_id: int, column: str, now: datetime) -> UsageCounterRecord:
        """Atomically add one to a counter column."""
        if column not in self.COUNTER_COLUMNS:
            raise ValueError(f"Unknown usage counter: {column}")

        tx.execute(
            f"UPDATE usage_counters SET {column} = {column} + 1, updated_at = ? WHERE id = ?",
            (to_db_time(now), counter_id)
        )
        return self._get(tx, counter_id)

    def increment_ai_question(self, tx: Transaction, counter_id: int, day: str, now: datetime) -> UsageCounterRecord:
        """Count an AI question for the period and for the given UTC day."""
        tx.execute(
            """UPDATE usage_counters SET
                   ai_questions_asked = ai_questions_asked + 1,
                   ai_questions_today = CASE WHEN ai_questions_day = ? THEN ai_questions_today + 1 ELSE 1 END,
                   ai_questions_day = ?,
                   updated_at = ?
               WHERE id = ?""",
            (day, day, to_db_time(now), counter_id)
        )
        return self._get(tx, counter_id)

    def list_for_user(self, user_id: str) -> List[UsageCounterRecord]:
        """All counter rows for a user, newest period first."""
        results = self.db.execute(
            "SELECT * FROM usage_counters WHERE user_id = ? ORDER BY period_start DESC",
            (user_id,)
        )
        return [UsageCounterRecord.from_row(r) for r in results]

    def _get(self, tx: Transaction, counter_id: int) -> UsageCounterRecord:
        results = tx.execute("SELECT * FROM usage_counters WHERE id = ?", (counter_id,))
        return UsageCounterRecord.from_row(results[0])

    def summary(self, user_id: str) -> Dict[str, Any]:
        """Lifetime totals across all periods for a user."""
        results = self.db.execute(
            """SELECT
                COUNT(*) AS periods,
                SUM(courses_created) AS courses_created,
                SUM(videos_uploaded) AS videos_uploaded,
                SUM(quizzes_generated) AS quizzes_generated,
                SUM(ai_questions_asked) AS ai_questions_asked
               FROM usage_counters WHERE user_id = ?""",
            (user_id,)
        )
        row = results[0] if results else {}
        return {
            "user_id": user_id,
            "periods": row.get("periods", 0) or 0,
            "courses_created": row.get("courses_created", 0) or 0,
            "videos_uploaded": row.get("videos_uploaded", 0) or 0,
            "quizzes_generated": row.get("quizzes_generated", 0) or 0,
            "ai_questions_asked": row.get("ai_questions_asked", 0) or 0,
        }

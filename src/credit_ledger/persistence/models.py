"""
Data Models for Persistence Layer

Row-level records for the ledger tables. Timestamps are always UTC and are
stored as fixed-width ISO-8601 strings on SQLite, so string comparison in SQL
matches chronological order.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Serialize a datetime for storage (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (ISO string on SQLite, datetime on PostgreSQL)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class TransactionType(Enum):
    """Closed set of ledger entry kinds."""
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    SUBSCRIPTION_CREDIT = "subscription_credit"
    EXPIRATION = "expiration"

    @property
    def is_credit(self) -> bool:
        """Entry kinds that add credits to a balance."""
        return self in CREDIT_TYPES


CREDIT_TYPES = frozenset({
    TransactionType.PURCHASE,
    TransactionType.REFUND,
    TransactionType.BONUS,
    TransactionType.SUBSCRIPTION_CREDIT,
})


@dataclass(frozen=True)
class RelatedEntity:
    """Reference from a ledger entry to the thing that caused it."""
    related_id: str
    related_type: str


@dataclass
class BalanceRecord:
    """Persisted balance snapshot."""
    user_id: str
    amount: int = 0
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "amount": self.amount,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BalanceRecord":
        return cls(
            user_id=row["user_id"],
            amount=int(row["amount"]),
            updated_at=from_db_time(row["updated_at"]),
        )


@dataclass(frozen=True)
class TransactionRecord:
    """Persisted ledger entry. Immutable once written."""
    user_id: str
    type: TransactionType
    amount: int
    description: Optional[str] = None
    related_id: Optional[str] = None
    related_type: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    transaction_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    seq: Optional[int] = None

    @property
    def related_entity(self) -> Optional[RelatedEntity]:
        if self.related_id is None:
            return None
        return RelatedEntity(self.related_id, self.related_type or "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "type": self.type.value,
            "amount": self.amount,
            "description": self.description,
            "related_id": self.related_id,
            "related_type": self.related_type,
            "created_at": self.created_at.isoformat(),
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.transaction_id,
            self.user_id,
            self.type.value,
            self.amount,
            self.description,
            self.related_id,
            self.related_type,
            to_db_time(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TransactionRecord":
        return cls(
            seq=row.get("seq"),
            transaction_id=row["transaction_id"],
            user_id=row["user_id"],
            type=TransactionType(row["type"]),
            amount=int(row["amount"]),
            description=row.get("description"),
            related_id=row.get("related_id"),
            related_type=row.get("related_type"),
            created_at=from_db_time(row["created_at"]),
        )


@dataclass
class UsageCounterRecord:
    """Per-period usage counters for plan-gated actions."""
    user_id: str
    period_start: datetime
    period_end: datetime
    courses_created: int = 0
    videos_uploaded: int = 0
    quizzes_generated: int = 0
    ai_questions_asked: int = 0
    ai_questions_today: int = 0
    ai_questions_day: Optional[str] = None  # YYYY-MM-DD (UTC) of ai_questions_today
    id: Optional[int] = None

    def ai_questions_on(self, day: str) -> int:
        """AI questions asked on the given UTC day."""
        return self.ai_questions_today if self.ai_questions_day == day else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "courses_created": self.courses_created,
            "videos_uploaded": self.videos_uploaded,
            "quizzes_generated": self.quizzes_generated,
            "ai_questions_asked": self.ai_questions_asked,
            "ai_questions_today": self.ai_questions_today,
            "ai_questions_day": self.ai_questions_day,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageCounterRecord":
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            period_start=from_db_time(row["period_start"]),
            period_end=from_db_time(row["period_end"]),
            courses_created=int(row.get("courses_created") or 0),
            videos_uploaded=int(row.get("videos_uploaded") or 0),
            quizzes_generated=int(row.get("quizzes_generated") or 0),
            ai_questions_asked=int(row.get("ai_questions_asked") or 0),
            ai_questions_today=int(row.get("ai_questions_today") or 0),
            ai_questions_day=row.get("ai_questions_day"),
        )

"""
Usage Limiter

Enforces plan caps on gated actions: courses created, videos uploaded and
quizzes generated per billing period, AI questions per UTC day.

Check first, act, then record:

    decision = limiter.can_perform_action(user_id, UsageAction.UPLOAD_VIDEO)
    if decision.allowed:
        upload(...)
        limiter.increment_usage(user_id, UsageAction.UPLOAD_VIDEO)

The check and the increment are separate steps, so two concurrent callers can
both pass a check at ``limit - 1``. Caps are soft in that sense; the counters
themselves never lose an increment.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional
import structlog

from ..persistence.database import Database, get_database
from ..persistence.models import UsageCounterRecord, utc_now
from ..persistence.repository import UsageCounterRepository
from .plans import UNLIMITED, InMemorySubscriptionCatalog, PlanFeatures, SubscriptionCatalog

logger = structlog.get_logger()


class UsageAction(Enum):
    """Plan-gated actions."""
    CREATE_COURSE = "create_course"
    UPLOAD_VIDEO = "upload_video"
    GENERATE_QUIZ = "generate_quiz"
    ASK_AI = "ask_ai"


# action -> (counter column, plan feature, human label)
ACTION_LIMITS = {
    UsageAction.CREATE_COURSE: ("courses_created", "courses", "course"),
    UsageAction.UPLOAD_VIDEO: ("videos_uploaded", "videos", "video"),
    UsageAction.GENERATE_QUIZ: ("quizzes_generated", "quizzes_per_month", "quiz"),
    UsageAction.ASK_AI: ("ai_questions_asked", "ai_questions_per_day", "daily AI question"),
}


def utc_day(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


@dataclass
class UsageDecision:
    """Answer to "may this user do this now?"."""
    allowed: bool
    action: UsageAction
    used: int
    limit: int
    reason: Optional[str] = None

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(0, self.limit - self.used)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "action": self.action.value,
            "used": self.used,
            "limit": self.limit if not self.unlimited else "unlimited",
            "remaining": self.remaining if not self.unlimited else "unlimited",
            "reason": self.reason,
        }


@dataclass
class UsageStatus:
    """Every counter and limit for the user's current period."""
    user_id: str
    plan_id: str
    period_start: datetime
    period_end: datetime
    counters: UsageCounterRecord
    features: PlanFeatures
    day: str

    def used(self, action: UsageAction) -> int:
        column, _, _ = ACTION_LIMITS[action]
        if action == UsageAction.ASK_AI:
            return self.counters.ai_questions_on(self.day)
        return getattr(self.counters, column)

    def limit(self, action: UsageAction) -> int:
        _, feature, _ = ACTION_LIMITS[action]
        return getattr(self.features, feature)

    def to_dict(self) -> Dict[str, Any]:
        usage = {}
        for action in UsageAction:
            limit = self.limit(action)
            usage[action.value] = {
                "used": self.used(action),
                "limit": limit if limit != UNLIMITED else "unlimited",
            }
        return {
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "usage": usage,
            "ai_questions_this_period": self.counters.ai_questions_asked,
        }


class UsageLimiter:
    """
    Per-period usage counters checked against the user's plan.

    Usage:
        limiter = UsageLimiter(catalog=catalog)
        decision = limiter.can_perform_action(user_id, UsageAction.CREATE_COURSE)
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        catalog: Optional[SubscriptionCatalog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db or get_database()
        self.counters = UsageCounterRepository(self.db)
        self.catalog = catalog or InMemorySubscriptionCatalog()
        self.clock = clock or utc_now

    def can_perform_action(self, user_id: str, action: UsageAction) -> UsageDecision:
        """
        Check the action against the plan limit.

        -1 = unlimited, 0 = feature not in plan, otherwise used < limit.
        """
        status = self.get_usage_status(user_id)
        used = status.used(action)
        limit = status.limit(action)
        _, _, label = ACTION_LIMITS[action]

        if limit == UNLIMITED:
            return UsageDecision(allowed=True, action=action, used=used, limit=limit)

        if limit == 0:
            return UsageDecision(
                allowed=False,
                action=action,
                used=used,
                limit=limit,
                reason=f"Your plan does not include {label} usage. Upgrade to unlock it.",
            )

        if used >= limit:
            logger.debug("usage_limit_reached", user_id=user_id, action=action.value, used=used, limit=limit)
            return UsageDecision(
                allowed=False,
                action=action,
                used=used,
                limit=limit,
                reason=f"You reached your {label} limit ({used}/{limit}). Upgrade your plan for more.",
            )

        return UsageDecision(allowed=True, action=action, used=used, limit=limit)

    def increment_usage(self, user_id: str, action: UsageAction) -> UsageCounterRecord:
        """Record one successful action. Call only after the action succeeded."""
        now = self.clock()
        period = self.catalog.resolve_period(user_id, now)
        column, _, _ = ACTION_LIMITS[action]

        with self.db.transaction() as tx:
            counter = self.counters.get_or_create(tx, user_id, period.period_start, period.period_end, now)
            if action == UsageAction.ASK_AI:
                counter = self.counters.increment_ai_question(tx, counter.id, utc_day(now), now)
            else:
                counter = self.counters.increment(tx, counter.id, column, now)

        logger.info(
            "usage_recorded",
            user_id=user_id,
            action=action.value,
            value=getattr(counter, column),
        )
        return counter

    def get_usage_status(self, user_id: str) -> UsageStatus:
        """Counters and limits for the current period, creating the row if needed."""
        now = self.clock()
        period = self.catalog.resolve_period(user_id, now)

        with self.db.transaction() as tx:
            counter = self.counters.get_or_create(tx, user_id, period.period_start, period.period_end, now)

        return UsageStatus(
            user_id=user_id,
            plan_id=period.plan.id,
            period_start=counter.period_start,
            period_end=counter.period_end,
            counters=counter,
            features=period.plan.features,
            day=utc_day(now),
        )

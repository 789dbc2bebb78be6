"""
Subscription Plan Catalog

Boundary to the subscription system. The ledger only needs to know, for a
user, which plan applies right now, what the plan allows, and which billing
period the monthly allotment belongs to.

``SubscriptionCatalog`` is the narrow interface the engine depends on;
``InMemorySubscriptionCatalog`` is the bundled implementation, seeded with
the marketplace's default plan set and loadable from JSON.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Union
import uuid
import structlog

from pydantic import BaseModel, ConfigDict, Field

from ..core.errors import PlanNotFound, SubscriptionNotFound
from ..core.expiration import add_months
from ..persistence.models import utc_now

logger = structlog.get_logger()

UNLIMITED = -1


class PlanFeatures(BaseModel):
    """Limits and commercial terms of a plan. ``-1`` means unlimited."""
    model_config = ConfigDict(extra="allow")

    courses: int = Field(default=1, ge=UNLIMITED)
    videos: int = Field(default=10, ge=UNLIMITED)
    quizzes_per_month: int = Field(default=0, ge=UNLIMITED)
    ai_questions_per_day: int = Field(default=5, ge=UNLIMITED)
    credits_per_month: int = Field(default=0)
    commission_rate: float = Field(default=0.05, ge=0.0, le=1.0)
    support: str = Field(default="community")


class SubscriptionPlan(BaseModel):
    """A plan in the catalog."""
    id: str
    name: str
    display_name: str
    type: str = Field(default="creator", description="creator or student")
    price: Decimal = Field(default=Decimal("0.00"), ge=0)
    billing_period: str = "monthly"
    features: PlanFeatures = Field(default_factory=PlanFeatures)
    is_active: bool = True

    @property
    def is_free(self) -> bool:
        return self.price == 0


class SubscriptionStatus(Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"


@dataclass
class Subscription:
    """A user's subscription to a plan."""
    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    def covers(self, moment: datetime) -> bool:
        """Whether ``moment`` falls inside the current billing period."""
        if self.current_period_start is None or self.current_period_end is None:
            return False
        return self.current_period_start <= moment <= self.current_period_end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
        }


@dataclass
class SubscriptionPeriod:
    """Billing window the monthly allotment and usage caps apply to."""
    period_start: datetime
    period_end: datetime
    plan: SubscriptionPlan
    subscription_id: Optional[str] = None

    @property
    def credits_per_month(self) -> int:
        return self.plan.features.credits_per_month

    def contains(self, moment: datetime) -> bool:
        return self.period_start <= moment <= self.period_end


def calendar_month_period(moment: datetime) -> tuple:
    """[first instant, last instant] of the UTC calendar month containing ``moment``."""
    moment = moment.astimezone(timezone.utc)
    start = datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)
    end = add_months(start, 1) - timedelta(microseconds=1)
    return start, end


# Used when neither a subscription nor a seeded free plan is available
FALLBACK_FEATURES = {
    "creator": PlanFeatures(
        courses=1,
        videos=10,
        quizzes_per_month=0,
        credits_per_month=5,
        commission_rate=0.05,
        ai_questions_per_day=5,
    ),
    "student": PlanFeatures(
        courses=1,
        videos=10,
        quizzes_per_month=0,
        credits_per_month=0,
        commission_rate=0.05,
        ai_questions_per_day=5,
    ),
}

DEFAULT_PLANS: List[Dict[str, Any]] = [
    # Creator plans
    {
        "id": "creator_free",
        "name": "creator_free",
        "display_name": "Free",
        "type": "creator",
        "price": "0.00",
        "features": {
            "courses": 1,
            "videos": 10,
            "quizzes_per_month": 0,
            "credits_per_month": 5,
            "commission_rate": 0.25,
            "ai_questions_per_day": 0,
            "support": "community",
        },
    },
    {
        "id": "creator_basic",
        "name": "creator_basic",
        "display_name": "Basic",
        "type": "creator",
        "price": "29.00",
        "features": {
            "courses": 5,
            "videos": 50,
            "quizzes_per_month": 5,
            "commission_rate": 0.15,
            "ai_questions_per_day": 10,
            "support": "email",
        },
    },
    {
        "id": "creator_pro",
        "name": "creator_pro",
        "display_name": "Pro",
        "type": "creator",
        "price": "69.00",
        "features": {
            "courses": UNLIMITED,
            "videos": UNLIMITED,
            "quizzes_per_month": UNLIMITED,
            "commission_rate": 0.08,
            "ai_questions_per_day": UNLIMITED,
            "support": "priority",
            "certificates": True,
        },
    },
    # Student plans
    {
        "id": "student_free",
        "name": "student_free",
        "display_name": "Free",
        "type": "student",
        "price": "0.00",
        "features": {
            "courses": 0,
            "videos": 0,
            "quizzes_per_month": 0,
            "commission_rate": 0,
            "ai_questions_per_day": 5,
            "support": "community",
            "courses_access": "purchased",
        },
    },
    {
        "id": "student_family",
        "name": "student_family",
        "display_name": "Family",
        "type": "student",
        "price": "29.00",
        "features": {
            "courses": 0,
            "videos": 0,
            "quizzes_per_month": 0,
            "commission_rate": 0,
            "ai_questions_per_day": UNLIMITED,
            "support": "email",
            "courses_access": "all",
            "progress_reports": True,
        },
    },
]


class SubscriptionCatalog(ABC):
    """What the ledger needs from the subscription system."""

    @abstractmethod
    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        """Plan by id. Raises PlanNotFound."""
        pass

    @abstractmethod
    def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        """The user's active subscription, if any."""
        pass

    @abstractmethod
    def get_default_plan(self, user_id: str) -> SubscriptionPlan:
        """Free-tier plan applied to users without a subscription."""
        pass

    def resolve_period(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionPeriod:
        """
        Billing period in effect at ``now``.

        An active subscription contributes its own period while ``now`` lies
        inside it; otherwise the UTC calendar month is used, so a period that
        lapsed before renewal was recorded can never be granted twice.
        """
        now = now or utc_now()
        subscription = self.get_active_subscription(user_id)

        if subscription is not None:
            plan = self.get_plan(subscription.plan_id)
            if subscription.covers(now):
                return SubscriptionPeriod(
                    period_start=subscription.current_period_start,
                    period_end=subscription.current_period_end,
                    plan=plan,
                    subscription_id=subscription.id,
                )
            start, end = calendar_month_period(now)
            return SubscriptionPeriod(start, end, plan, subscription_id=subscription.id)

        start, end = calendar_month_period(now)
        return SubscriptionPeriod(start, end, self.get_default_plan(user_id))

    def get_plan_features(self, user_id: str) -> PlanFeatures:
        """Features of the plan currently applying to the user."""
        subscription = self.get_active_subscription(user_id)
        if subscription is not None:
            return self.get_plan(subscription.plan_id).features
        return self.get_default_plan(user_id).features

    def get_commission_rate(self, user_id: str) -> float:
        """Platform commission on a creator's sales."""
        return self.get_plan_features(user_id).commission_rate


class InMemorySubscriptionCatalog(SubscriptionCatalog):
    """
    Thread-safe in-process catalog.

    Usage:
        catalog = InMemorySubscriptionCatalog()
        catalog.set_user_role(user_id, "creator")
        catalog.subscribe(user_id, "creator_basic")
    """

    def __init__(self, plans: Optional[List[Union[SubscriptionPlan, Dict[str, Any]]]] = None):
        self._lock = Lock()
        self._plans: Dict[str, SubscriptionPlan] = {}
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._roles: Dict[str, str] = {}

        for plan in (DEFAULT_PLANS if plans is None else plans):
            self.add_plan(plan)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "InMemorySubscriptionCatalog":
        """Load plans from a JSON array of plan objects."""
        data = json.loads(Path(path).read_text())
        if not isinstance(data, list):
            raise ValueError("Plan catalog must be a JSON array")
        catalog = cls(plans=data)
        logger.info("plan_catalog_loaded", path=str(path), plans=len(data))
        return catalog

    def add_plan(self, plan: Union[SubscriptionPlan, Dict[str, Any]]) -> SubscriptionPlan:
        if not isinstance(plan, SubscriptionPlan):
            plan = SubscriptionPlan.model_validate(plan)
        with self._lock:
            self._plans[plan.id] = plan
        return plan

    def list_plans(self, plan_type: Optional[str] = None) -> List[SubscriptionPlan]:
        """Active plans, optionally of one type."""
        return [
            p for p in self._plans.values()
            if p.is_active and (plan_type is None or p.type == plan_type)
        ]

    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        return plan

    def get_plan_by_name(self, name: str) -> Optional[SubscriptionPlan]:
        for plan in self._plans.values():
            if plan.name == name:
                return plan
        return None

    def set_user_role(self, user_id: str, role: str) -> None:
        if role not in FALLBACK_FEATURES:
            raise ValueError(f"Unknown role: {role}")
        with self._lock:
            self._roles[user_id] = role

    def get_default_plan(self, user_id: str) -> SubscriptionPlan:
        role = self._roles.get(user_id, "student")
        plan = self.get_plan_by_name(f"{role}_free")
        if plan is not None:
            return plan
        return SubscriptionPlan(
            id=f"{role}_fallback",
            name=f"{role}_fallback",
            display_name="Free",
            type=role,
            features=FALLBACK_FEATURES[role],
        )

    def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._lock:
            for subscription in self._subscriptions.get(user_id, []):
                if subscription.status == SubscriptionStatus.ACTIVE:
                    return subscription
        return None

    def subscribe(
        self,
        user_id: str,
        plan_id: str,
        period_start: Optional[datetime] = None,
        subscription_id: Optional[str] = None,
    ) -> Subscription:
        """
        Start a subscription, cancelling any active one.

        The first period runs one calendar month from ``period_start``.
        """
        self.get_plan(plan_id)
        start = period_start or utc_now()
        subscription = Subscription(
            id=subscription_id or str(uuid.uuid4()),
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=start,
            current_period_end=add_months(start, 1),
        )

        with self._lock:
            history = self._subscriptions.setdefault(user_id, [])
            for existing in history:
                if existing.status == SubscriptionStatus.ACTIVE:
                    existing.status = SubscriptionStatus.CANCELLED
            history.insert(0, subscription)

        logger.info("subscription_started", user_id=user_id, plan_id=plan_id, subscription_id=subscription.id)
        return subscription

    def renew(self, user_id: str) -> Subscription:
        """Advance the active subscription to its next billing period."""
        subscription = self.get_active_subscription(user_id)
        if subscription is None:
            raise SubscriptionNotFound(user_id)

        with self._lock:
            if subscription.cancel_at_period_end:
                subscription.status = SubscriptionStatus.CANCELLED
            else:
                start = subscription.current_period_end
                subscription.current_period_start = start
                subscription.current_period_end = add_months(start, 1)

        logger.info(
            "subscription_renewed",
            user_id=user_id,
            subscription_id=subscription.id,
            status=subscription.status.value,
        )
        return subscription

    def cancel(self, user_id: str, immediate: bool = False) -> Subscription:
        """
        Cancel the active subscription.

        Without ``immediate`` the user keeps the plan until the period ends.
        Free plans cannot be cancelled.
        """
        subscription = self.get_active_subscription(user_id)
        if subscription is None:
            raise SubscriptionNotFound(user_id)
        if self.get_plan(subscription.plan_id).is_free:
            raise ValueError("A free plan cannot be cancelled")

        with self._lock:
            if immediate:
                subscription.status = SubscriptionStatus.CANCELLED
            else:
                subscription.cancel_at_period_end = True

        logger.info("subscription_cancelled", user_id=user_id, subscription_id=subscription.id, immediate=immediate)
        return subscription

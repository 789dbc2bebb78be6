"""
Credit Ledger - Billing Module

Plan catalog, usage caps, credit costs and the platform/creator sale split.
"""

from .plans import (
    PlanFeatures,
    SubscriptionPlan,
    Subscription,
    SubscriptionStatus,
    SubscriptionPeriod,
    SubscriptionCatalog,
    InMemorySubscriptionCatalog,
)
from .usage_limiter import UsageLimiter, UsageAction, UsageDecision, UsageStatus
from .split import SplitResult, calculate_split
from .costs import video_upload_cost, quiz_generation_cost, ai_chat_cost

__all__ = [
    "PlanFeatures",
    "SubscriptionPlan",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionPeriod",
    "SubscriptionCatalog",
    "InMemorySubscriptionCatalog",
    "UsageLimiter",
    "UsageAction",
    "UsageDecision",
    "UsageStatus",
    "SplitResult",
    "calculate_split",
    "video_upload_cost",
    "quiz_generation_cost",
    "ai_chat_cost",
]

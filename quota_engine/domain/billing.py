from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class PlanTier(str, Enum):
    """Supported subscription plan tiers."""

    FREE = "free"
    PLUS = "plus"

    @property
    def is_premium(self) -> bool:
        return self is PlanTier.PLUS


class SubscriptionStatus(str, Enum):
    """Lifecycle state of an account's subscription."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"
    INACTIVE = "inactive"


class AccountPlanRecord(BaseModel):
    """Account row joined with its governing subscription row, if any."""

    account_id: str
    plan_slug: str | None = None
    sub_plan: str | None = None
    status: str | None = None
    current_period_end: datetime | None = None
    external_subscription_id: str | None = None


class PlanSnapshot(BaseModel):
    """Cached, derived view of an account's plan and subscription state."""

    account_id: str
    plan_slug: str | None = None
    sub_plan: str | None = None
    status: str | None = None
    current_period_end: datetime | None = None
    external_subscription_id: str | None = None
    is_active: bool = False
    is_premium: bool = False
    cached_at: datetime = Field(description="When the snapshot was read from the database")

    @property
    def plan_tier(self) -> PlanTier:
        return PlanTier.PLUS if self.is_premium else PlanTier.FREE


class PremiumAccessResult(BaseModel):
    has_access: bool
    reason: str | None = None
    plan_slug: str | None = None
    subscription_status: str | None = None


class CacheInvalidationResponse(BaseModel):
    account_id: str
    invalidated: bool = True

"""Domain models for plan-scoped feature quotas."""

from __future__ import annotations

from datetime import date
from enum import Enum

from pydantic import BaseModel, Field

from .billing import PlanTier


class QuotaWindow(str, Enum):
    """Period over which a feature quota accumulates."""

    DAILY = "daily"
    MONTHLY = "monthly"


class QuotaFeature(str, Enum):
    """Premium features billed in plain usage units."""

    DEEP_RESEARCH = "DR"
    PRO_SEARCH = "PS"
    RAG = "RAG"


class QuotaLimit(BaseModel):
    """Resolved limit and window for a (feature, plan) pair."""

    limit: int = Field(ge=0)
    window: QuotaWindow = QuotaWindow.DAILY


class QuotaConfig(BaseModel):
    """Administrative record for a (feature, plan) quota."""

    id: int | None = None
    feature: QuotaFeature
    plan: PlanTier
    quota_limit: int = Field(ge=0)
    quota_window: QuotaWindow = QuotaWindow.DAILY
    is_active: bool = True

    class Config:
        from_attributes = True


class QuotaConfigCreateRequest(BaseModel):
    feature: QuotaFeature
    plan: PlanTier
    quota_limit: int = Field(ge=0, description="Units allowed per window")
    quota_window: QuotaWindow = Field(default=QuotaWindow.DAILY)
    is_active: bool = True


class QuotaConfigUpdateRequest(BaseModel):
    quota_limit: int | None = Field(default=None, ge=0)
    quota_window: QuotaWindow | None = None
    is_active: bool | None = None


class QuotaConfigResponse(BaseModel):
    data: QuotaConfig


class QuotaConfigListResponse(BaseModel):
    data: list[QuotaConfig]


class QuotaConfigCacheStats(BaseModel):
    """Snapshot of the in-process quota config cache."""

    size: int = Field(ge=0)
    age_seconds: float | None = Field(
        default=None,
        description="Seconds since the cache was last loaded, None when empty or invalidated",
    )
    ttl_seconds: int = Field(ge=0)
    is_valid: bool


class ConsumeQuotaRequest(BaseModel):
    account_id: str = Field(min_length=1)
    feature: QuotaFeature
    plan: PlanTier
    # Positivity is enforced by the service so it can raise its own error type.
    amount: int = 1


class UsageResponse(BaseModel):
    feature: QuotaFeature
    used: int = Field(ge=0)
    limit: int = Field(ge=0)
    period_start: date


class QuotaExceededPayload(BaseModel):
    """Structured error payload returned when a feature quota is exhausted."""

    message: str = Field(default="Quota exceeded")
    feature: QuotaFeature
    limit: int = Field(ge=0)
    used: int = Field(ge=0)

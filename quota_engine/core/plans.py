"""Plan-tier limits for metered models and feature quotas, derived from configuration."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from functools import lru_cache
from typing import Dict, NamedTuple

from ..domain.billing import PlanTier, SubscriptionStatus
from ..domain.quotas import QuotaFeature, QuotaLimit, QuotaWindow
from .config import get_settings
from .windows import ensure_utc


class MeteredModel(str, Enum):
    """Chat models whose requests are counted per account."""

    GEMINI_2_5_FLASH_LITE = "gemini-2.5-flash-lite"
    GEMINI_2_5_FLASH = "gemini-2.5-flash"
    GEMINI_2_5_PRO = "gemini-2.5-pro"


class WindowLimits(NamedTuple):
    daily: int
    minute: int


# Premium accounts use the base model without a direct cap; heavy models also
# draw down the base model's premium budget.
BASE_MODEL = MeteredModel.GEMINI_2_5_FLASH_LITE
DUAL_QUOTA_PARTNERS: Dict[MeteredModel, MeteredModel] = {
    MeteredModel.GEMINI_2_5_FLASH: BASE_MODEL,
    MeteredModel.GEMINI_2_5_PRO: BASE_MODEL,
}

_METERED_BY_ID: Dict[str, MeteredModel] = {model.value: model for model in MeteredModel}

_ACCESS_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})
_GRACE_STATUSES = frozenset(
    {
        SubscriptionStatus.CANCELED.value,
        SubscriptionStatus.CANCELLED.value,
        SubscriptionStatus.PAST_DUE.value,
    }
)


@lru_cache
def _model_limits_map() -> Dict[MeteredModel, Dict[PlanTier, WindowLimits]]:
    settings = get_settings()
    return {
        MeteredModel.GEMINI_2_5_FLASH_LITE: {
            PlanTier.FREE: WindowLimits(
                settings.rate_limit_flash_lite_free_day,
                settings.rate_limit_flash_lite_free_minute,
            ),
            PlanTier.PLUS: WindowLimits(
                settings.rate_limit_flash_lite_plus_day,
                settings.rate_limit_flash_lite_plus_minute,
            ),
        },
        MeteredModel.GEMINI_2_5_FLASH: {
            PlanTier.FREE: WindowLimits(
                settings.rate_limit_flash_free_day,
                settings.rate_limit_flash_free_minute,
            ),
            PlanTier.PLUS: WindowLimits(
                settings.rate_limit_flash_plus_day,
                settings.rate_limit_flash_plus_minute,
            ),
        },
        MeteredModel.GEMINI_2_5_PRO: {
            PlanTier.FREE: WindowLimits(
                settings.rate_limit_pro_free_day,
                settings.rate_limit_pro_free_minute,
            ),
            PlanTier.PLUS: WindowLimits(
                settings.rate_limit_pro_plus_day,
                settings.rate_limit_pro_plus_minute,
            ),
        },
    }


def resolve_metered_model(resource_id: str) -> MeteredModel | None:
    """Return the metered model for ``resource_id`` or ``None`` when unmetered."""

    return _METERED_BY_ID.get(resource_id)


def get_model_limits(model: MeteredModel, plan: PlanTier) -> WindowLimits:
    return _model_limits_map()[model][plan]


def dual_quota_partner(model: MeteredModel, plan: PlanTier) -> MeteredModel | None:
    """Return the secondary counter that also gates ``model`` for ``plan``."""

    if not plan.is_premium:
        return None
    return DUAL_QUOTA_PARTNERS.get(model)


def is_direct_cap_waived(model: MeteredModel, plan: PlanTier) -> bool:
    return plan.is_premium and model == BASE_MODEL


def default_quota_limits() -> Dict[tuple[QuotaFeature, PlanTier], QuotaLimit]:
    """Seed values for feature quotas. Free-tier pairs stay unconfigured and fail closed."""

    settings = get_settings()
    return {
        (QuotaFeature.DEEP_RESEARCH, PlanTier.PLUS): QuotaLimit(
            limit=settings.quota_deep_research_plus_limit, window=QuotaWindow.DAILY
        ),
        (QuotaFeature.PRO_SEARCH, PlanTier.PLUS): QuotaLimit(
            limit=settings.quota_pro_search_plus_limit, window=QuotaWindow.DAILY
        ),
        (QuotaFeature.RAG, PlanTier.PLUS): QuotaLimit(
            limit=settings.quota_rag_plus_limit, window=QuotaWindow.MONTHLY
        ),
    }


def has_subscription_access(
    status: str | None,
    current_period_end: datetime | None,
    now: datetime,
    grace_period_days: int | None = None,
) -> bool:
    """Return whether a subscription in ``status`` still grants paid access at ``now``.

    Active and trialing subscriptions always grant access. Canceled and past-due
    subscriptions keep access until the end of the paid period plus the grace
    period. Everything else, including unknown statuses, denies.
    """

    if status is None:
        return False
    normalised = status.lower()
    if normalised in _ACCESS_STATUSES:
        return True
    if normalised in _GRACE_STATUSES:
        if current_period_end is None:
            return False
        if grace_period_days is None:
            grace_period_days = get_settings().subscription_grace_period_days
        cutoff = ensure_utc(current_period_end) + timedelta(days=grace_period_days)
        return ensure_utc(now) < cutoff
    return False

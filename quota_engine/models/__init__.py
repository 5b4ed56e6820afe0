"""SQLAlchemy ORM models used by the quota engine."""

from .account import AccountModel, SubscriptionModel
from .quota import QuotaConfigModel, QuotaUsageModel
from .rate_limit import RateLimitCounterModel

__all__ = [
    "AccountModel",
    "SubscriptionModel",
    "QuotaConfigModel",
    "QuotaUsageModel",
    "RateLimitCounterModel",
]

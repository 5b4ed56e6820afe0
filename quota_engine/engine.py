"""Process-owned engine state and the per-unit-of-work facade over it."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings, get_settings
from .domain.billing import PlanSnapshot, PlanTier
from .domain.quotas import ConsumeQuotaRequest, QuotaFeature, UsageResponse
from .domain.rate_limits import RateLimitResult, RateLimitStatus
from .repositories.quotas import (
    InMemoryQuotaConfigRepository,
    InMemoryQuotaUsageRepository,
    QuotaConfigRepository,
    QuotaUsageRepository,
    SqlAlchemyQuotaConfigRepository,
    SqlAlchemyQuotaUsageRepository,
)
from .repositories.rate_limits import (
    InMemoryRateLimitCounterRepository,
    RateLimitCounterRepository,
    SqlAlchemyRateLimitCounterRepository,
)
from .repositories.subscriptions import (
    InMemorySubscriptionRepository,
    SqlAlchemySubscriptionRepository,
    SubscriptionRepository,
)
from .services.cache import LocalTTLCache, RedisCache, build_redis_client
from .services.quota_config import QuotaConfigCache, QuotaConfigService
from .services.quotas import QuotaService
from .services.rate_limiter import RateLimitService
from .services.subscription_access import SubscriptionAccessService


@dataclass
class EngineState:
    """Caches shared by every request in the process. Built once at startup."""

    settings: Settings
    local_plans: LocalTTLCache[str, PlanSnapshot]
    local_counters: LocalTTLCache[str, int]
    redis: RedisCache
    quota_configs: QuotaConfigCache

    async def close(self) -> None:
        await self.redis.close()


def build_engine_state(settings: Settings | None = None, redis_client: Any | None = None) -> EngineState:
    settings = settings or get_settings()
    client = redis_client if redis_client is not None else build_redis_client(settings.redis_url)
    return EngineState(
        settings=settings,
        local_plans=LocalTTLCache(
            max_size=settings.plan_cache_local_max_size,
            ttl_seconds=settings.plan_cache_local_ttl_seconds,
        ),
        local_counters=LocalTTLCache(
            max_size=settings.counter_cache_local_max_size,
            ttl_seconds=settings.plan_cache_local_ttl_seconds,
        ),
        redis=RedisCache(
            client,
            key_prefix=settings.redis_key_prefix,
            default_ttl=settings.plan_cache_redis_ttl_seconds,
        ),
        quota_configs=QuotaConfigCache(ttl_seconds=settings.quota_config_cache_ttl_seconds),
    )


class QuotaEngine:
    """Bundles the engine services over one set of repositories."""

    def __init__(
        self,
        state: EngineState,
        *,
        counters: RateLimitCounterRepository,
        usage: QuotaUsageRepository,
        configs: QuotaConfigRepository,
        subscriptions: SubscriptionRepository,
    ) -> None:
        self.state = state
        self.rate_limits = RateLimitService(counters)
        self.quota_configs = QuotaConfigService(configs, state.quota_configs)
        self.quotas = QuotaService(usage, self.quota_configs)
        self.subscriptions = SubscriptionAccessService(
            subscriptions,
            local_plans=state.local_plans,
            local_counters=state.local_counters,
            redis=state.redis,
            grace_period_days=state.settings.subscription_grace_period_days,
        )

    @classmethod
    def for_session(cls, state: EngineState, session: AsyncSession) -> "QuotaEngine":
        return cls(
            state,
            counters=SqlAlchemyRateLimitCounterRepository(session),
            usage=SqlAlchemyQuotaUsageRepository(session),
            configs=SqlAlchemyQuotaConfigRepository(session),
            subscriptions=SqlAlchemySubscriptionRepository(session),
        )

    @classmethod
    def in_memory(cls, state: EngineState) -> "QuotaEngine":
        return cls(
            state,
            counters=InMemoryRateLimitCounterRepository(),
            usage=InMemoryQuotaUsageRepository(),
            configs=InMemoryQuotaConfigRepository(),
            subscriptions=InMemorySubscriptionRepository(),
        )

    async def check_rate_limit(
        self, account_id: str, resource_id: str, plan: PlanTier, now: datetime | None = None
    ) -> RateLimitResult:
        return await self.rate_limits.check_rate_limit(account_id, resource_id, plan, now)

    async def record_request(
        self, account_id: str, resource_id: str, plan: PlanTier, now: datetime | None = None
    ) -> None:
        await self.rate_limits.record_request(account_id, resource_id, plan, now)

    async def get_rate_limit_status(
        self, account_id: str, resource_id: str, plan: PlanTier, now: datetime | None = None
    ) -> RateLimitStatus | None:
        return await self.rate_limits.get_rate_limit_status(account_id, resource_id, plan, now)

    async def consume_quota(
        self, request: ConsumeQuotaRequest, now: datetime | None = None
    ) -> UsageResponse:
        return await self.quotas.consume_quota(request, now)

    async def get_usage(
        self, account_id: str, feature: QuotaFeature, plan: PlanTier, now: datetime | None = None
    ) -> UsageResponse:
        return await self.quotas.get_usage(account_id, feature, plan, now)

    async def get_all_usage(
        self, account_id: str, plan: PlanTier, now: datetime | None = None
    ) -> list[UsageResponse]:
        return await self.quotas.get_all_usage(account_id, plan, now)

    async def invalidate_user_caches(self, account_id: str) -> None:
        await self.subscriptions.invalidate_user_caches(account_id)

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Mapping

import structlog

from ..core.plans import default_quota_limits
from ..domain.billing import PlanTier
from ..domain.quotas import (
    QuotaConfig,
    QuotaConfigCacheStats,
    QuotaConfigCreateRequest,
    QuotaConfigUpdateRequest,
    QuotaFeature,
    QuotaLimit,
    QuotaWindow,
)
from ..repositories.quotas import QuotaConfigRepository

logger = structlog.get_logger()

FAIL_CLOSED_LIMIT = QuotaLimit(limit=0, window=QuotaWindow.DAILY)


def cache_key(feature: QuotaFeature, plan: PlanTier) -> str:
    return f"{feature.value}:{plan.value}"


class QuotaConfigCache:
    """Process-wide snapshot of every active quota config.

    The mapping is replaced wholesale on reload and never mutated in place, so
    readers always see a complete snapshot.
    """

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._configs: Mapping[str, QuotaLimit] = {}
        self._loaded_at: float | None = None
        self._generation = 0
        self._lock = threading.Lock()

    def is_valid(self) -> bool:
        loaded_at = self._loaded_at
        if loaded_at is None:
            return False
        return self._clock() - loaded_at < self._ttl

    def get(self, key: str) -> QuotaLimit | None:
        return self._configs.get(key)

    @property
    def generation(self) -> int:
        return self._generation

    def replace(self, configs: Dict[str, QuotaLimit], generation: int | None = None) -> bool:
        """Install a snapshot, marking it fresh unless the cache was invalidated after
        ``generation`` was read."""

        with self._lock:
            self._configs = dict(configs)
            if generation is not None and generation != self._generation:
                self._loaded_at = None
                return False
            self._loaded_at = self._clock()
            return True

    def invalidate(self) -> None:
        with self._lock:
            self._generation += 1
            self._loaded_at = None

    def stats(self) -> QuotaConfigCacheStats:
        loaded_at = self._loaded_at
        age = None if loaded_at is None else self._clock() - loaded_at
        return QuotaConfigCacheStats(
            size=len(self._configs),
            age_seconds=age,
            ttl_seconds=self._ttl,
            is_valid=self.is_valid(),
        )


class QuotaConfigService:
    """Resolves (feature, plan) limits through the shared config cache."""

    def __init__(self, repository: QuotaConfigRepository, cache: QuotaConfigCache) -> None:
        self._repository = repository
        self._cache = cache

    async def refresh_cache(self) -> None:
        generation = self._cache.generation
        configs = await self._repository.list_active()
        fresh = self._cache.replace(
            {
                cache_key(config.feature, config.plan): QuotaLimit(
                    limit=config.quota_limit, window=config.quota_window
                )
                for config in configs
            },
            generation,
        )
        if not fresh:
            logger.info("quota_config.reload_superseded", count=len(configs))
            return
        logger.info("quota_config.loaded", count=len(configs))

    async def _ensure_loaded(self) -> None:
        if not self._cache.is_valid():
            await self.refresh_cache()

    async def get_quota_config(self, feature: QuotaFeature, plan: PlanTier) -> QuotaLimit:
        await self._ensure_loaded()
        config = self._cache.get(cache_key(feature, plan))
        if config is None:
            logger.warning("quota_config.missing", feature=feature.value, plan=plan.value)
            return FAIL_CLOSED_LIMIT
        return config

    async def get_quota_configs_for_plan(self, plan: PlanTier) -> Dict[QuotaFeature, QuotaLimit]:
        await self._ensure_loaded()
        return {
            feature: self._cache.get(cache_key(feature, plan)) or FAIL_CLOSED_LIMIT
            for feature in QuotaFeature
        }

    async def list_quota_configs(self) -> list[QuotaConfig]:
        return await self._repository.list()

    async def create_quota_config(self, payload: QuotaConfigCreateRequest) -> QuotaConfig:
        config = await self._repository.create(payload)
        self._cache.invalidate()
        logger.info(
            "quota_config.created",
            feature=config.feature.value,
            plan=config.plan.value,
            limit=config.quota_limit,
            window=config.quota_window.value,
        )
        return config

    async def update_quota_config(
        self,
        feature: QuotaFeature,
        plan: PlanTier,
        payload: QuotaConfigUpdateRequest,
    ) -> QuotaConfig | None:
        config = await self._repository.update(feature, plan, payload)
        self._cache.invalidate()
        if config is not None:
            logger.info(
                "quota_config.updated",
                feature=feature.value,
                plan=plan.value,
                limit=config.quota_limit,
                window=config.quota_window.value,
            )
        return config

    def cache_stats(self) -> QuotaConfigCacheStats:
        return self._cache.stats()


async def seed_default_quota_configs(repository: QuotaConfigRepository) -> int:
    """Insert default quota configs for pairs that have no row yet."""

    created = 0
    for (feature, plan), limit in default_quota_limits().items():
        if await repository.get(feature, plan) is not None:
            continue
        await repository.create(
            QuotaConfigCreateRequest(
                feature=feature,
                plan=plan,
                quota_limit=limit.limit,
                quota_window=limit.window,
            )
        )
        created += 1
    if created:
        logger.info("quota_config.seeded", created=created)
    return created

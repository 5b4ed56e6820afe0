from __future__ import annotations

from datetime import datetime
from typing import Dict, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ..core.plans import has_subscription_access
from ..core.windows import utcnow
from ..domain.billing import AccountPlanRecord, PlanSnapshot, PlanTier, PremiumAccessResult
from ..repositories.subscriptions import SubscriptionRepository
from ..telemetry import record_cache_lookup
from .cache import LocalTTLCache, RedisCache

logger = structlog.get_logger()

PREMIUM_PLAN_SLUG = PlanTier.PLUS.value


def build_plan_snapshot(
    record: AccountPlanRecord,
    now: datetime,
    grace_period_days: int | None = None,
) -> PlanSnapshot:
    """Derive access flags once, at the point the record leaves the database."""

    is_active = has_subscription_access(
        record.status, record.current_period_end, now, grace_period_days
    )
    is_premium = is_active and PREMIUM_PLAN_SLUG in (record.sub_plan, record.plan_slug)
    return PlanSnapshot(
        **record.model_dump(),
        is_active=is_active,
        is_premium=is_premium,
        cached_at=now,
    )


class SubscriptionAccessService:
    """Plan lookups through the local cache, then Redis, then the database."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        *,
        local_plans: LocalTTLCache[str, PlanSnapshot],
        local_counters: LocalTTLCache[str, int],
        redis: RedisCache,
        grace_period_days: int | None = None,
    ) -> None:
        self._repository = repository
        self._local_plans = local_plans
        self._local_counters = local_counters
        self._redis = redis
        self._grace_period_days = grace_period_days

    async def get_plan_snapshot(
        self, account_id: str, now: datetime | None = None
    ) -> PlanSnapshot | None:
        """Return the cached plan view, or ``None`` when it cannot be determined."""

        if not account_id:
            return None
        current = now or utcnow()
        generation = self._local_plans.generation

        cached = self._local_plans.get(account_id)
        record_cache_lookup("plan", "local", cached is not None)
        if cached is not None:
            return cached

        shared = await self._redis.get_plan_snapshot(account_id, current)
        if self._redis.enabled:
            record_cache_lookup("plan", "redis", shared is not None)
        if shared is not None:
            self._local_plans.set(account_id, shared, generation)
            return shared

        try:
            record = await self._repository.fetch(account_id)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("subscription.lookup_failed", account_id=account_id, error=str(exc))
            return None
        if record is None:
            return None

        snapshot = build_plan_snapshot(record, current, self._grace_period_days)
        # An invalidation during the read makes this snapshot stale for both tiers.
        if self._local_plans.set(account_id, snapshot, generation):
            await self._redis.set_plan_snapshot(snapshot, current)
        return snapshot

    async def get_plan_snapshots(
        self, account_ids: Sequence[str], now: datetime | None = None
    ) -> Dict[str, PlanSnapshot]:
        """Batch lookup: local cache, then one MGET, then one database query."""

        current = now or utcnow()
        generation = self._local_plans.generation
        results: Dict[str, PlanSnapshot] = {}
        uncached: list[str] = []
        for account_id in dict.fromkeys(account_ids):
            cached = self._local_plans.get(account_id)
            if cached is not None:
                results[account_id] = cached
            else:
                uncached.append(account_id)
        if not uncached:
            return results

        still_uncached: list[str] = []
        shared = await self._redis.get_plan_snapshots(uncached, current)
        for account_id, snapshot in zip(uncached, shared):
            if snapshot is not None:
                results[account_id] = snapshot
                self._local_plans.set(account_id, snapshot, generation)
            else:
                still_uncached.append(account_id)
        if not still_uncached:
            return results

        try:
            records = await self._repository.fetch_many(still_uncached)
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                "subscription.batch_lookup_failed", count=len(still_uncached), error=str(exc)
            )
            return results

        for account_id, record in records.items():
            snapshot = build_plan_snapshot(record, current, self._grace_period_days)
            results[account_id] = snapshot
            if self._local_plans.set(account_id, snapshot, generation):
                await self._redis.set_plan_snapshot(snapshot, current)
        return results

    async def check_premium_access(self, account_id: str | None) -> PremiumAccessResult:
        if not account_id:
            return PremiumAccessResult(has_access=False, reason="No account id provided")
        snapshot = await self.get_plan_snapshot(account_id)
        if snapshot is None:
            return PremiumAccessResult(has_access=False, reason="Subscription not found")
        has_access = snapshot.is_premium and snapshot.is_active
        return PremiumAccessResult(
            has_access=has_access,
            reason=None if has_access else "Premium subscription required",
            plan_slug=snapshot.plan_slug,
            subscription_status=snapshot.status,
        )

    async def resolve_plan_tier(self, account_id: str) -> PlanTier:
        """Plan tier used for gating. Unknown or unreadable plans count as free."""

        snapshot = await self.get_plan_snapshot(account_id)
        if snapshot is None:
            return PlanTier.FREE
        return snapshot.plan_tier

    async def invalidate_user_caches(self, account_id: str) -> None:
        await self._redis.invalidate_plan_snapshot(account_id)
        # The local tier is cleared wholesale; its short TTL bounds staleness elsewhere.
        self._local_plans.clear()
        logger.debug("subscription.caches_invalidated", account_id=account_id)

    async def get_counter_fast(self, account_id: str, key: str) -> int:
        """Display-only counter from the cache tiers; never used for enforcement."""

        cache_key = f"{account_id}:{key}"
        local = self._local_counters.get(cache_key)
        record_cache_lookup("counter", "local", local is not None)
        if local is not None:
            return local
        count = await self._redis.get_counter(account_id, key)
        self._local_counters.set(cache_key, count)
        return count

    async def increment_counter(self, account_id: str, key: str, ttl_seconds: int) -> int:
        count = await self._redis.increment_counter(account_id, key, ttl_seconds)
        cache_key = f"{account_id}:{key}"
        optimistic = (self._local_counters.get(cache_key) or 0) + 1
        self._local_counters.set(cache_key, max(count, optimistic))
        return max(count, optimistic)

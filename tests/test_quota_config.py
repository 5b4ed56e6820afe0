"""Tests for the quota config cache and admin operations."""

import asyncio

import pytest

from quota_engine.domain.billing import PlanTier
from quota_engine.domain.quotas import (
    QuotaConfigCreateRequest,
    QuotaConfigUpdateRequest,
    QuotaFeature,
    QuotaLimit,
    QuotaWindow,
)
from quota_engine.repositories.quotas import InMemoryQuotaConfigRepository
from quota_engine.services.quota_config import (
    FAIL_CLOSED_LIMIT,
    QuotaConfigCache,
    QuotaConfigService,
    cache_key,
    seed_default_quota_configs,
)


class FakeClock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class CountingConfigRepository(InMemoryQuotaConfigRepository):
    def __init__(self) -> None:
        super().__init__()
        self.loads = 0

    async def list_active(self):
        self.loads += 1
        return await super().list_active()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return CountingConfigRepository()


@pytest.fixture
def service(repository, clock):
    return QuotaConfigService(repository, QuotaConfigCache(ttl_seconds=300, clock=clock))


def create(feature=QuotaFeature.DEEP_RESEARCH, plan=PlanTier.PLUS, limit=5, **extra):
    return QuotaConfigCreateRequest(feature=feature, plan=plan, quota_limit=limit, **extra)


def test_cache_key_joins_feature_and_plan():
    assert cache_key(QuotaFeature.DEEP_RESEARCH, PlanTier.PLUS) == "DR:plus"


@pytest.mark.asyncio
async def test_lookups_within_ttl_hit_the_cache(service, repository, clock):
    await repository.create(create())

    first = await service.get_quota_config(QuotaFeature.DEEP_RESEARCH, PlanTier.PLUS)
    clock.value += 299
    second = await service.get_quota_config(QuotaFeature.DEEP_RESEARCH, PlanTier.PLUS)

    assert first == second == QuotaLimit(limit=5, window=QuotaWindow.DAILY)
    assert repository.loads == 1


@pytest.mark.asyncio
async def test_expired_cache_reloads_everything(service, repository, clock):
    await repository.create(create())
    await service.get_quota_config(QuotaFeature.DEEP_RESEARCH, PlanTier.PLUS)

    # Written behind the service's back; visible only after expiry.
    await repository.create(create(feature=QuotaFeature.PRO_SEARCH, limit=10))
    stale = await service.get_quota_config(QuotaFeature.PRO_SEARCH, PlanTier.PLUS)
    clock.value += 300
    fresh = await service.get_quota_config(QuotaFeature.PRO_SEARCH, PlanTier.PLUS)

    assert stale == FAIL_CLOSED_LIMIT
    assert fresh.limit == 10
    assert repository.loads == 2


@pytest.mark.asyncio
async def test_missing_config_fails_closed(service):
    result = await service.get_quota_config(QuotaFeature.RAG, PlanTier.FREE)

    assert result.limit == 0
    assert result.window == QuotaWindow.DAILY


@pytest.mark.asyncio
async def test_inactive_configs_are_not_cached(service, repository):
    await repository.create(create(is_active=False))

    result = await service.get_quota_config(QuotaFeature.DEEP_RESEARCH, PlanTier.PLUS)

    assert result == FAIL_CLOSED_LIMIT


@pytest.mark.asyncio
async def test_create_invalidates_cache(service, repository):
    await service.get_quota_config(QuotaFeature.RAG, PlanTier.PLUS)

    created = await service.create_quota_config(
        create(feature=QuotaFeature.RAG, limit=2000, quota_window=QuotaWindow.MONTHLY)
    )
    result = await service.get_quota_config(QuotaFeature.RAG, PlanTier.PLUS)

    assert created.id is not None
    assert result == QuotaLimit(limit=2000, window=QuotaWindow.MONTHLY)
    assert repository.loads == 2


@pytest.mark.asyncio
async def test_write_during_reload_is_visible_on_next_read(clock):
    class BlockingConfigRepository(InMemoryQuotaConfigRepository):
        def __init__(self) -> None:
            super().__init__()
            self.entered = asyncio.Event()
            self.release = asyncio.Event()

        async def list_active(self):
            snapshot = await super().list_active()
            self.entered.set()
            await self.release.wait()
            return snapshot

    repository = BlockingConfigRepository()
    service = QuotaConfigService(repository, QuotaConfigCache(ttl_seconds=300, clock=clock))

    reader = asyncio.create_task(
        service.get_quota_config(QuotaFeature.DEEP_RESEARCH, PlanTier.FREE)
    )
    await repository.entered.wait()
    await service.create_quota_config(create(plan=PlanTier.FREE, limit=7))
    repository.release.set()

    assert await reader == FAIL_CLOSED_LIMIT
    assert service.cache_stats().is_valid is False

    result = await service.get_quota_config(QuotaFeature.DEEP_RESEARCH, PlanTier.FREE)

    assert result.limit == 7
    assert service.cache_stats().is_valid is True


@pytest.mark.asyncio
async def test_duplicate_create_is_rejected(service):
    await service.create_quota_config(create())

    with pytest.raises(ValueError):
        await service.create_quota_config(create(limit=99))


@pytest.mark.asyncio
async def test_update_changes_limit_and_invalidates(service):
    await service.create_quota_config(create())
    await service.get_quota_config(QuotaFeature.DEEP_RESEARCH, PlanTier.PLUS)

    updated = await service.update_quota_config(
        QuotaFeature.DEEP_RESEARCH, PlanTier.PLUS, QuotaConfigUpdateRequest(quota_limit=8)
    )
    result = await service.get_quota_config(QuotaFeature.DEEP_RESEARCH, PlanTier.PLUS)

    assert updated is not None and updated.quota_limit == 8
    assert updated.quota_window == QuotaWindow.DAILY
    assert result.limit == 8


@pytest.mark.asyncio
async def test_update_unknown_pair_returns_none(service):
    result = await service.update_quota_config(
        QuotaFeature.RAG, PlanTier.FREE, QuotaConfigUpdateRequest(quota_limit=1)
    )

    assert result is None


@pytest.mark.asyncio
async def test_configs_for_plan_cover_every_feature(service):
    await service.create_quota_config(create(limit=3))

    configs = await service.get_quota_configs_for_plan(PlanTier.PLUS)

    assert set(configs) == set(QuotaFeature)
    assert configs[QuotaFeature.DEEP_RESEARCH].limit == 3
    assert configs[QuotaFeature.RAG] == FAIL_CLOSED_LIMIT


@pytest.mark.asyncio
async def test_cache_stats_track_age_and_validity(service, repository, clock):
    assert service.cache_stats().is_valid is False

    await repository.create(create())
    await service.refresh_cache()
    clock.value += 12
    stats = service.cache_stats()

    assert stats.size == 1
    assert stats.age_seconds == 12
    assert stats.ttl_seconds == 300
    assert stats.is_valid is True


@pytest.mark.asyncio
async def test_seed_is_idempotent():
    repository = InMemoryQuotaConfigRepository()

    assert await seed_default_quota_configs(repository) == 3
    assert await seed_default_quota_configs(repository) == 0
    assert {(c.feature, c.plan) for c in await repository.list()} == {
        (QuotaFeature.DEEP_RESEARCH, PlanTier.PLUS),
        (QuotaFeature.PRO_SEARCH, PlanTier.PLUS),
        (QuotaFeature.RAG, PlanTier.PLUS),
    }

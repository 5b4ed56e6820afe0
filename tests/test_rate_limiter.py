"""Tests for per-model rate limiting over daily and per-minute windows."""

import math
from datetime import timedelta

import pytest

from quota_engine.core import plans
from quota_engine.core.plans import MeteredModel, get_model_limits
from quota_engine.domain.billing import PlanTier
from quota_engine.domain.rate_limits import (
    AbsentCounter,
    PresentCounter,
    RateLimitCounter,
    RateLimitDenialReason,
)
from quota_engine.repositories.rate_limits import InMemoryRateLimitCounterRepository
from quota_engine.services.rate_limiter import RateLimitService, decide
from tests.conftest import NOW

FLASH_LITE = "gemini-2.5-flash-lite"
FLASH = "gemini-2.5-flash"
PRO = "gemini-2.5-pro"


@pytest.fixture
def counters():
    return InMemoryRateLimitCounterRepository()


@pytest.fixture
def service(counters):
    return RateLimitService(counters)


def seed(counters, resource_id, daily, minute=0, account_id="acct", at=NOW):
    counters._counters[(account_id, resource_id)] = RateLimitCounter(
        account_id=account_id,
        resource_id=resource_id,
        daily_count=daily,
        minute_count=minute,
        last_daily_reset=at,
        last_minute_reset=at,
    )


@pytest.mark.asyncio
async def test_fresh_account_has_full_free_budget(service, counters):
    result = await service.check_rate_limit("acct", FLASH_LITE, PlanTier.FREE, now=NOW)

    assert result.allowed is True
    assert result.reason is None
    assert result.remaining_daily == 20
    assert result.remaining_minute == 5
    assert result.reset_times.daily == NOW.replace(day=16, hour=0, minute=0, second=0)
    assert result.reset_times.minute == NOW.replace(minute=31, second=0)
    # Checking never creates a row.
    assert isinstance(await counters.get(account_id="acct", resource_id=FLASH_LITE), AbsentCounter)


@pytest.mark.asyncio
async def test_recorded_requests_reduce_remaining(service):
    for _ in range(3):
        await service.record_request("acct", FLASH_LITE, PlanTier.FREE, now=NOW)

    result = await service.check_rate_limit("acct", FLASH_LITE, PlanTier.FREE, now=NOW)

    assert result.allowed is True
    assert result.remaining_daily == 17
    assert result.remaining_minute == 2


@pytest.mark.asyncio
async def test_minute_limit_denies_until_next_minute(service):
    for _ in range(5):
        await service.record_request("acct", FLASH_LITE, PlanTier.FREE, now=NOW)

    denied = await service.check_rate_limit("acct", FLASH_LITE, PlanTier.FREE, now=NOW)
    assert denied.allowed is False
    assert denied.reason == RateLimitDenialReason.MINUTE_LIMIT_EXCEEDED
    assert denied.remaining_daily == 15
    assert denied.remaining_minute == 0
    assert denied.retry_after_seconds(NOW) == 50

    later = await service.check_rate_limit(
        "acct", FLASH_LITE, PlanTier.FREE, now=NOW + timedelta(seconds=50)
    )
    assert later.allowed is True
    assert later.remaining_minute == 5
    assert later.remaining_daily == 15


@pytest.mark.asyncio
async def test_daily_counts_reset_at_utc_midnight(service):
    for offset in range(4):
        await service.record_request(
            "acct", FLASH_LITE, PlanTier.FREE, now=NOW + timedelta(minutes=offset)
        )

    next_day = NOW.replace(hour=0, minute=0, second=0) + timedelta(days=1)
    result = await service.check_rate_limit("acct", FLASH_LITE, PlanTier.FREE, now=next_day)

    assert result.remaining_daily == 20
    assert result.remaining_minute == 5


@pytest.mark.asyncio
async def test_counter_from_yesterday_reads_as_full_budget(service, counters):
    seed(counters, FLASH_LITE, daily=20, minute=5, at=NOW - timedelta(days=1))

    result = await service.check_rate_limit("acct", FLASH_LITE, PlanTier.FREE, now=NOW)

    assert result.allowed is True
    assert result.remaining_daily == 20
    assert result.remaining_minute == 5


@pytest.mark.asyncio
async def test_free_account_is_denied_after_daily_limit(service):
    for offset in range(20):
        await service.record_request(
            "acct", FLASH_LITE, PlanTier.FREE, now=NOW + timedelta(minutes=offset)
        )

    result = await service.check_rate_limit(
        "acct", FLASH_LITE, PlanTier.FREE, now=NOW + timedelta(minutes=25)
    )

    assert result.allowed is False
    assert result.reason == RateLimitDenialReason.DAILY_LIMIT_EXCEEDED
    assert result.remaining_daily == 0
    assert result.remaining_minute == 5


@pytest.mark.asyncio
async def test_premium_heavy_model_is_bounded_by_base_model_budget(service, counters):
    seed(counters, FLASH, daily=50)
    seed(counters, FLASH_LITE, daily=900)

    result = await service.check_rate_limit("acct", FLASH, PlanTier.PLUS, now=NOW)

    assert result.allowed is True
    assert result.remaining_daily == 100
    assert result.remaining_minute == 100


@pytest.mark.asyncio
async def test_premium_heavy_model_denied_when_base_budget_spent(service, counters):
    seed(counters, PRO, daily=10, minute=1)
    seed(counters, FLASH_LITE, daily=1000)

    result = await service.check_rate_limit("acct", PRO, PlanTier.PLUS, now=NOW)

    assert result.allowed is False
    assert result.reason == RateLimitDenialReason.DAILY_LIMIT_EXCEEDED
    assert result.remaining_minute == 99


@pytest.mark.asyncio
async def test_free_heavy_model_ignores_base_model_usage(service, counters):
    seed(counters, FLASH_LITE, daily=20)

    result = await service.check_rate_limit("acct", FLASH, PlanTier.FREE, now=NOW)

    assert result.allowed is True
    assert result.remaining_daily == 10
    assert result.remaining_minute == 3


@pytest.mark.asyncio
async def test_premium_base_model_is_uncapped(service, counters):
    seed(counters, FLASH_LITE, daily=5000, minute=500)

    result = await service.check_rate_limit("acct", FLASH_LITE, PlanTier.PLUS, now=NOW)

    assert result.allowed is True
    assert math.isinf(result.remaining_daily)
    assert math.isinf(result.remaining_minute)
    assert result.reset_times.daily == NOW
    assert result.reset_times.minute == NOW
    assert result.model_dump(mode="json")["remaining_daily"] is None


@pytest.mark.asyncio
async def test_unmetered_resource_is_always_allowed(service, counters):
    result = await service.check_rate_limit("acct", "some-other-model", PlanTier.FREE, now=NOW)
    await service.record_request("acct", "some-other-model", PlanTier.FREE, now=NOW)

    assert result.allowed is True
    assert math.isinf(result.remaining_daily)
    assert isinstance(
        await counters.get(account_id="acct", resource_id="some-other-model"), AbsentCounter
    )


@pytest.mark.asyncio
async def test_premium_record_increments_both_counters(service, counters):
    await service.record_request("acct", FLASH, PlanTier.PLUS, now=NOW)

    heavy = await counters.get(account_id="acct", resource_id=FLASH)
    base = await counters.get(account_id="acct", resource_id=FLASH_LITE)
    assert isinstance(heavy, PresentCounter) and heavy.counter.daily_count == 1
    assert isinstance(base, PresentCounter) and base.counter.daily_count == 1


@pytest.mark.asyncio
async def test_free_record_increments_only_requested_model(service, counters):
    await service.record_request("acct", FLASH, PlanTier.FREE, now=NOW)

    assert isinstance(await counters.get(account_id="acct", resource_id=FLASH), PresentCounter)
    assert isinstance(
        await counters.get(account_id="acct", resource_id=FLASH_LITE), AbsentCounter
    )


@pytest.mark.asyncio
async def test_status_reports_counts_and_limits(service):
    await service.record_request("acct", FLASH_LITE, PlanTier.FREE, now=NOW)
    await service.record_request("acct", FLASH_LITE, PlanTier.FREE, now=NOW)

    status = await service.get_rate_limit_status("acct", FLASH_LITE, PlanTier.FREE, now=NOW)

    assert status is not None
    assert status.daily_count == 2
    assert status.minute_count == 2
    assert status.daily_limit == 20
    assert status.minute_limit == 5
    assert status.remaining_daily == 18
    assert status.remaining_minute == 3


@pytest.mark.asyncio
async def test_status_for_waived_and_unmetered_resources(service):
    await service.record_request("acct", FLASH_LITE, PlanTier.PLUS, now=NOW)

    waived = await service.get_rate_limit_status("acct", FLASH_LITE, PlanTier.PLUS, now=NOW)
    assert waived is not None
    assert waived.daily_count == 1
    assert math.isinf(waived.daily_limit)
    assert waived.model_dump(mode="json")["daily_limit"] is None

    assert await service.get_rate_limit_status("acct", "unmetered", PlanTier.FREE, now=NOW) is None


@pytest.mark.asyncio
async def test_acquire_never_pushes_counter_past_limit(service, counters):
    first = await service.acquire("acct", PRO, PlanTier.FREE, now=NOW)
    second = await service.acquire("acct", PRO, PlanTier.FREE, now=NOW)
    third = await service.acquire("acct", PRO, PlanTier.FREE, now=NOW)

    assert first.allowed and first.remaining_minute == 1 and first.remaining_daily == 4
    assert second.allowed and second.remaining_minute == 0
    assert third.allowed is False
    assert third.reason == RateLimitDenialReason.MINUTE_LIMIT_EXCEEDED

    read = await counters.get(account_id="acct", resource_id=PRO)
    assert isinstance(read, PresentCounter)
    assert read.counter.daily_count == 2
    assert read.counter.minute_count == 2


@pytest.mark.asyncio
async def test_acquire_rolls_back_partner_on_denial(service, counters):
    seed(counters, FLASH_LITE, daily=1000)

    result = await service.acquire("acct", FLASH, PlanTier.PLUS, now=NOW)

    assert result.allowed is False
    heavy = await counters.get(account_id="acct", resource_id=FLASH)
    base = await counters.get(account_id="acct", resource_id=FLASH_LITE)
    assert heavy.counter.daily_count == 0
    assert base.counter.daily_count == 1000


def test_decide_reports_daily_before_minute():
    result = decide(0, 0, NOW)

    assert result.reason == RateLimitDenialReason.DAILY_LIMIT_EXCEEDED
    assert result.retry_after_seconds(NOW) == int(
        (NOW.replace(hour=0, minute=0, second=0) + timedelta(days=1) - NOW).total_seconds()
    )


def test_decide_clamps_negative_remaining():
    result = decide(-3, -1, NOW)

    assert result.remaining_daily == 0
    assert result.remaining_minute == 0


@pytest.fixture
def fresh_limit_table():
    plans._model_limits_map.cache_clear()
    yield
    plans._model_limits_map.cache_clear()


def test_model_limit_table_is_resolved_once(monkeypatch, settings, fresh_limit_table):
    loads = []

    def counting_settings():
        loads.append(1)
        return settings

    monkeypatch.setattr(plans, "get_settings", counting_settings)

    free = get_model_limits(MeteredModel.GEMINI_2_5_PRO, PlanTier.FREE)
    plus = get_model_limits(MeteredModel.GEMINI_2_5_FLASH, PlanTier.PLUS)

    assert (free.daily, free.minute) == (5, 2)
    assert plus.daily == 1000
    assert len(loads) == 1

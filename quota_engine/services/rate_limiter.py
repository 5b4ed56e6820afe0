"""Per-model request gating over rolling daily and per-minute windows.

Free accounts are held to the model's free limits. Premium accounts get the
premium limits, use the base model without a direct cap, and on heavy models
are additionally bounded by the base model's premium budget (dual quota).
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import NamedTuple

import structlog

from ..core.plans import (
    MeteredModel,
    WindowLimits,
    dual_quota_partner,
    get_model_limits,
    is_direct_cap_waived,
    resolve_metered_model,
)
from ..core.windows import is_new_day, is_new_minute, next_daily_reset, next_minute_reset, utcnow
from ..domain.billing import PlanTier
from ..domain.rate_limits import (
    AbsentCounter,
    CounterRead,
    RateLimitCounter,
    RateLimitDenialReason,
    RateLimitResult,
    RateLimitStatus,
    ResetTimes,
)
from ..repositories.rate_limits import RateLimitCounterRepository
from ..telemetry import RATE_LIMIT_DECISIONS

logger = structlog.get_logger()

UNLIMITED = math.inf


class WindowUsage(NamedTuple):
    daily: int
    minute: int


def normalise_counter(read: CounterRead) -> RateLimitCounter:
    """Turn an absent read into a zero-valued counter."""

    if isinstance(read, AbsentCounter):
        return RateLimitCounter(account_id=read.account_id, resource_id=read.resource_id)
    return read.counter


def project_usage(counter: RateLimitCounter, now: datetime) -> WindowUsage:
    """Counts as they stand at ``now``, with expired windows read as zero."""

    daily = 0 if is_new_day(counter.last_daily_reset, now) else counter.daily_count
    minute = 0 if is_new_minute(counter.last_minute_reset, now) else counter.minute_count
    return WindowUsage(daily=daily, minute=minute)


def _reset_times(now: datetime) -> ResetTimes:
    return ResetTimes(daily=next_daily_reset(now), minute=next_minute_reset(now))


def _unlimited_result(now: datetime) -> RateLimitResult:
    return RateLimitResult(
        allowed=True,
        remaining_daily=UNLIMITED,
        remaining_minute=UNLIMITED,
        reset_times=ResetTimes(daily=now, minute=now),
    )


def decide(remaining_daily: float, remaining_minute: float, now: datetime) -> RateLimitResult:
    """Allow only while both windows have budget; daily exhaustion is reported first."""

    if remaining_daily <= 0:
        return RateLimitResult(
            allowed=False,
            reason=RateLimitDenialReason.DAILY_LIMIT_EXCEEDED,
            remaining_daily=0,
            remaining_minute=max(remaining_minute, 0),
            reset_times=_reset_times(now),
        )
    if remaining_minute <= 0:
        return RateLimitResult(
            allowed=False,
            reason=RateLimitDenialReason.MINUTE_LIMIT_EXCEEDED,
            remaining_daily=remaining_daily,
            remaining_minute=0,
            reset_times=_reset_times(now),
        )
    return RateLimitResult(
        allowed=True,
        remaining_daily=remaining_daily,
        remaining_minute=remaining_minute,
        reset_times=_reset_times(now),
    )


class RateLimitService:
    def __init__(self, counters: RateLimitCounterRepository) -> None:
        self._counters = counters

    async def _usage(self, account_id: str, model: MeteredModel, now: datetime) -> WindowUsage:
        read = await self._counters.get(account_id=account_id, resource_id=model.value)
        return project_usage(normalise_counter(read), now)

    async def _remaining(
        self,
        account_id: str,
        model: MeteredModel,
        plan: PlanTier,
        now: datetime,
    ) -> tuple[WindowUsage, WindowLimits, int, int]:
        limits = get_model_limits(model, plan)
        usage = await self._usage(account_id, model, now)
        remaining_daily = limits.daily - usage.daily
        remaining_minute = limits.minute - usage.minute

        partner = dual_quota_partner(model, plan)
        if partner is not None:
            partner_limits = get_model_limits(partner, plan)
            partner_usage = await self._usage(account_id, partner, now)
            remaining_daily = min(remaining_daily, partner_limits.daily - partner_usage.daily)
            remaining_minute = min(remaining_minute, partner_limits.minute - partner_usage.minute)
        return usage, limits, remaining_daily, remaining_minute

    def _observe(self, account_id: str, resource_id: str, result: RateLimitResult) -> None:
        outcome = "allowed" if result.reason is None else result.reason.value
        RATE_LIMIT_DECISIONS.labels(resource=resource_id, outcome=outcome).inc()
        if not result.allowed:
            logger.info(
                "rate_limit.denied",
                account_id=account_id,
                resource=resource_id,
                reason=outcome,
                remaining_daily=result.remaining_daily,
                remaining_minute=result.remaining_minute,
            )

    async def check_rate_limit(
        self,
        account_id: str,
        resource_id: str,
        plan: PlanTier,
        now: datetime | None = None,
    ) -> RateLimitResult:
        """Decide whether one more request would be allowed. Never writes."""

        current = now or utcnow()
        model = resolve_metered_model(resource_id)
        if model is None or is_direct_cap_waived(model, plan):
            return _unlimited_result(current)

        _, _, remaining_daily, remaining_minute = await self._remaining(
            account_id, model, plan, current
        )
        result = decide(remaining_daily, remaining_minute, current)
        self._observe(account_id, resource_id, result)
        return result

    async def record_request(
        self,
        account_id: str,
        resource_id: str,
        plan: PlanTier,
        now: datetime | None = None,
    ) -> None:
        """Count one accepted request against the resource and its dual-quota partner."""

        model = resolve_metered_model(resource_id)
        if model is None:
            return
        current = now or utcnow()
        await self._counters.increment(account_id=account_id, resource_id=model.value, now=current)
        partner = dual_quota_partner(model, plan)
        if partner is not None:
            await self._counters.increment(
                account_id=account_id, resource_id=partner.value, now=current
            )
        logger.debug(
            "rate_limit.recorded",
            account_id=account_id,
            resource=resource_id,
            partner=partner.value if partner else None,
        )

    async def get_rate_limit_status(
        self,
        account_id: str,
        resource_id: str,
        plan: PlanTier,
        now: datetime | None = None,
    ) -> RateLimitStatus | None:
        current = now or utcnow()
        model = resolve_metered_model(resource_id)
        if model is None:
            return None

        if is_direct_cap_waived(model, plan):
            usage = await self._usage(account_id, model, current)
            return RateLimitStatus(
                resource_id=resource_id,
                daily_count=usage.daily,
                minute_count=usage.minute,
                daily_limit=UNLIMITED,
                minute_limit=UNLIMITED,
                remaining_daily=UNLIMITED,
                remaining_minute=UNLIMITED,
                reset_times=_reset_times(current),
            )

        usage, limits, remaining_daily, remaining_minute = await self._remaining(
            account_id, model, plan, current
        )
        return RateLimitStatus(
            resource_id=resource_id,
            daily_count=usage.daily,
            minute_count=usage.minute,
            daily_limit=limits.daily,
            minute_limit=limits.minute,
            remaining_daily=max(remaining_daily, 0),
            remaining_minute=max(remaining_minute, 0),
            reset_times=_reset_times(current),
        )

    async def acquire(
        self,
        account_id: str,
        resource_id: str,
        plan: PlanTier,
        now: datetime | None = None,
    ) -> RateLimitResult:
        """Check and record in one step: increment, evaluate, and take the
        increment back out when it breaches a limit.

        Concurrent callers racing the last unit may all be refused, but none
        can push a counter past its limit.
        """

        current = now or utcnow()
        model = resolve_metered_model(resource_id)
        if model is None:
            return _unlimited_result(current)
        if is_direct_cap_waived(model, plan):
            await self._counters.increment(
                account_id=account_id, resource_id=model.value, now=current
            )
            return _unlimited_result(current)

        touched = [model]
        partner = dual_quota_partner(model, plan)
        if partner is not None:
            touched.append(partner)

        remaining_daily: float = UNLIMITED
        remaining_minute: float = UNLIMITED
        for resource in touched:
            counter = await self._counters.increment(
                account_id=account_id, resource_id=resource.value, now=current
            )
            limits = get_model_limits(resource, plan)
            # Budget as it stood before this request.
            remaining_daily = min(remaining_daily, limits.daily - counter.daily_count + 1)
            remaining_minute = min(remaining_minute, limits.minute - counter.minute_count + 1)

        result = decide(remaining_daily, remaining_minute, current)
        if not result.allowed:
            for resource in touched:
                await self._counters.decrement(account_id=account_id, resource_id=resource.value)
        else:
            result = result.model_copy(
                update={
                    "remaining_daily": remaining_daily - 1,
                    "remaining_minute": remaining_minute - 1,
                }
            )
        self._observe(account_id, resource_id, result)
        return result

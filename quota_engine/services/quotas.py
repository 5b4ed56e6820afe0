from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import NoReturn

import structlog

from ..core.windows import period_start, utcnow
from ..domain.billing import PlanTier
from ..domain.quotas import (
    ConsumeQuotaRequest,
    QuotaExceededPayload,
    QuotaFeature,
    QuotaLimit,
    QuotaWindow,
    UsageResponse,
)
from ..repositories.quotas import QuotaUsageRepository
from ..telemetry import QUOTA_CONSUMPTIONS
from .quota_config import QuotaConfigService

logger = structlog.get_logger()


class QuotaValidationError(ValueError):
    """Raised when a consume request is malformed."""


class QuotaExceededError(Exception):
    """Raised when consuming would take usage past the configured limit."""

    def __init__(self, feature: QuotaFeature, limit: int, used: int) -> None:
        super().__init__(f"Quota exceeded for {feature.value}: {used}/{limit}")
        self.feature = feature
        self.limit = limit
        self.used = used

    def to_payload(self) -> QuotaExceededPayload:
        return QuotaExceededPayload(feature=self.feature, limit=self.limit, used=self.used)


class QuotaService:
    """Consumes and reports plan-scoped feature quotas."""

    def __init__(self, usage: QuotaUsageRepository, configs: QuotaConfigService) -> None:
        self._usage = usage
        self._configs = configs

    async def consume_quota(
        self, request: ConsumeQuotaRequest, now: datetime | None = None
    ) -> UsageResponse:
        if request.amount <= 0:
            raise QuotaValidationError("Amount must be positive")

        config = await self._configs.get_quota_config(request.feature, request.plan)
        start = period_start(config.window, now or utcnow())
        logger.debug(
            "quota.consume_attempt",
            account_id=request.account_id,
            feature=request.feature.value,
            amount=request.amount,
            window=config.window.value,
        )

        # Refusals that are visible up front never write.
        current = await self._usage.get_used(request.account_id, request.feature, start)
        if current + request.amount > config.limit:
            self._exceeded(request, config.limit, current)

        # A caller racing past the limit between the read and the upsert sees the
        # post-increment total. That overshoot is reported but not rolled back.
        used = await self._usage.increment(
            request.account_id, request.feature, start, request.amount
        )
        if used > config.limit:
            self._exceeded(request, config.limit, used)

        QUOTA_CONSUMPTIONS.labels(feature=request.feature.value, outcome="consumed").inc()
        logger.info(
            "quota.consumed",
            account_id=request.account_id,
            feature=request.feature.value,
            used=used,
            limit=config.limit,
        )
        return UsageResponse(
            feature=request.feature, used=used, limit=config.limit, period_start=start
        )

    def _exceeded(self, request: ConsumeQuotaRequest, limit: int, used: int) -> NoReturn:
        QUOTA_CONSUMPTIONS.labels(feature=request.feature.value, outcome="exceeded").inc()
        logger.info(
            "quota.exceeded",
            account_id=request.account_id,
            feature=request.feature.value,
            used=used,
            limit=limit,
        )
        raise QuotaExceededError(request.feature, limit, used)

    async def get_usage(
        self,
        account_id: str,
        feature: QuotaFeature,
        plan: PlanTier,
        now: datetime | None = None,
    ) -> UsageResponse:
        config = await self._configs.get_quota_config(feature, plan)
        start = period_start(config.window, now or utcnow())
        used = await self._usage.get_used(account_id, feature, start)
        return UsageResponse(feature=feature, used=used, limit=config.limit, period_start=start)

    async def get_all_usage(
        self,
        account_id: str,
        plan: PlanTier,
        now: datetime | None = None,
    ) -> list[UsageResponse]:
        current = now or utcnow()
        configs = await self._configs.get_quota_configs_for_plan(plan)

        by_window: dict[QuotaWindow, list[QuotaFeature]] = defaultdict(list)
        for feature, config in configs.items():
            by_window[config.window].append(feature)

        responses: dict[QuotaFeature, UsageResponse] = {}
        for window, features in by_window.items():
            start = period_start(window, current)
            used_by_feature = await self._usage.list_for_period(account_id, start, features)
            for feature in features:
                limit: QuotaLimit = configs[feature]
                responses[feature] = UsageResponse(
                    feature=feature,
                    used=used_by_feature.get(feature, 0),
                    limit=limit.limit,
                    period_start=start,
                )
        return [responses[feature] for feature in QuotaFeature if feature in responses]

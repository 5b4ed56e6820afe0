"""Persistence for feature quota configuration and per-period usage."""

from __future__ import annotations

from datetime import date
from typing import Dict, Iterable, Protocol, Tuple

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.windows import naive_utcnow
from ..domain.billing import PlanTier
from ..domain.quotas import (
    QuotaConfig,
    QuotaConfigCreateRequest,
    QuotaConfigUpdateRequest,
    QuotaFeature,
)
from ..models.quota import QuotaConfigModel, QuotaUsageModel


class QuotaConfigRepository(Protocol):
    async def list_active(self) -> list[QuotaConfig]:
        ...

    async def list(self) -> list[QuotaConfig]:
        ...

    async def get(self, feature: QuotaFeature, plan: PlanTier) -> QuotaConfig | None:
        ...

    async def create(self, payload: QuotaConfigCreateRequest) -> QuotaConfig:
        ...

    async def update(
        self,
        feature: QuotaFeature,
        plan: PlanTier,
        payload: QuotaConfigUpdateRequest,
    ) -> QuotaConfig | None:
        ...


class InMemoryQuotaConfigRepository(QuotaConfigRepository):
    def __init__(self) -> None:
        self._configs: Dict[Tuple[QuotaFeature, PlanTier], QuotaConfig] = {}
        self._next_id = 1

    async def list_active(self) -> list[QuotaConfig]:
        return [config for config in self._configs.values() if config.is_active]

    async def list(self) -> list[QuotaConfig]:
        return list(self._configs.values())

    async def get(self, feature: QuotaFeature, plan: PlanTier) -> QuotaConfig | None:
        return self._configs.get((feature, plan))

    async def create(self, payload: QuotaConfigCreateRequest) -> QuotaConfig:
        key = (payload.feature, payload.plan)
        if key in self._configs:
            raise ValueError("quota config already exists for feature and plan")
        config = QuotaConfig(id=self._next_id, **payload.model_dump())
        self._next_id += 1
        self._configs[key] = config
        return config

    async def update(
        self,
        feature: QuotaFeature,
        plan: PlanTier,
        payload: QuotaConfigUpdateRequest,
    ) -> QuotaConfig | None:
        current = self._configs.get((feature, plan))
        if current is None:
            return None
        updated = current.model_copy(update=payload.model_dump(exclude_none=True))
        self._configs[(feature, plan)] = updated
        return updated


class SqlAlchemyQuotaConfigRepository(QuotaConfigRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_active(self) -> list[QuotaConfig]:
        result = await self._session.execute(
            select(QuotaConfigModel).where(QuotaConfigModel.is_active.is_(True))
        )
        return [QuotaConfig.model_validate(model) for model in result.scalars().all()]

    async def list(self) -> list[QuotaConfig]:
        result = await self._session.execute(
            select(QuotaConfigModel).order_by(QuotaConfigModel.feature, QuotaConfigModel.plan)
        )
        return [QuotaConfig.model_validate(model) for model in result.scalars().all()]

    async def _get_model(self, feature: QuotaFeature, plan: PlanTier) -> QuotaConfigModel | None:
        result = await self._session.execute(
            select(QuotaConfigModel).where(
                QuotaConfigModel.feature == feature.value,
                QuotaConfigModel.plan == plan.value,
            )
        )
        return result.scalar_one_or_none()

    async def get(self, feature: QuotaFeature, plan: PlanTier) -> QuotaConfig | None:
        model = await self._get_model(feature, plan)
        if model is None:
            return None
        return QuotaConfig.model_validate(model)

    async def create(self, payload: QuotaConfigCreateRequest) -> QuotaConfig:
        model = QuotaConfigModel(
            feature=payload.feature.value,
            plan=payload.plan.value,
            quota_limit=payload.quota_limit,
            quota_window=payload.quota_window.value,
            is_active=payload.is_active,
        )
        self._session.add(model)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise ValueError("quota config already exists for feature and plan") from exc
        await self._session.refresh(model)
        return QuotaConfig.model_validate(model)

    async def update(
        self,
        feature: QuotaFeature,
        plan: PlanTier,
        payload: QuotaConfigUpdateRequest,
    ) -> QuotaConfig | None:
        model = await self._get_model(feature, plan)
        if model is None:
            return None
        if payload.quota_limit is not None:
            model.quota_limit = payload.quota_limit
        if payload.quota_window is not None:
            model.quota_window = payload.quota_window.value
        if payload.is_active is not None:
            model.is_active = payload.is_active
        await self._session.commit()
        await self._session.refresh(model)
        return QuotaConfig.model_validate(model)


class QuotaUsageRepository(Protocol):
    async def get_used(self, account_id: str, feature: QuotaFeature, period_start: date) -> int:
        ...

    async def list_for_period(
        self,
        account_id: str,
        period_start: date,
        features: Iterable[QuotaFeature],
    ) -> Dict[QuotaFeature, int]:
        """Return usage for every listed feature in one round-trip."""
        ...

    async def increment(
        self,
        account_id: str,
        feature: QuotaFeature,
        period_start: date,
        amount: int,
    ) -> int:
        """Atomically add ``amount`` and return the post-increment total."""
        ...


class InMemoryQuotaUsageRepository(QuotaUsageRepository):
    def __init__(self) -> None:
        self._usage: Dict[Tuple[str, QuotaFeature, date], int] = {}

    async def get_used(self, account_id: str, feature: QuotaFeature, period_start: date) -> int:
        return self._usage.get((account_id, feature, period_start), 0)

    async def list_for_period(
        self,
        account_id: str,
        period_start: date,
        features: Iterable[QuotaFeature],
    ) -> Dict[QuotaFeature, int]:
        wanted = set(features)
        return {
            feature: used
            for (owner, feature, start), used in self._usage.items()
            if owner == account_id and start == period_start and feature in wanted
        }

    async def increment(
        self,
        account_id: str,
        feature: QuotaFeature,
        period_start: date,
        amount: int,
    ) -> int:
        key = (account_id, feature, period_start)
        self._usage[key] = self._usage.get(key, 0) + amount
        return self._usage[key]


class SqlAlchemyQuotaUsageRepository(QuotaUsageRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def _insert(self):
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(QuotaUsageModel)
        if dialect == "sqlite":
            return sqlite.insert(QuotaUsageModel)
        raise RuntimeError(f"Unsupported database dialect for usage upserts: {dialect}")

    async def get_used(self, account_id: str, feature: QuotaFeature, period_start: date) -> int:
        result = await self._session.execute(
            select(QuotaUsageModel.used).where(
                QuotaUsageModel.account_id == account_id,
                QuotaUsageModel.feature == feature.value,
                QuotaUsageModel.period_start == period_start,
            )
        )
        used = result.scalar_one_or_none()
        return used or 0

    async def list_for_period(
        self,
        account_id: str,
        period_start: date,
        features: Iterable[QuotaFeature],
    ) -> Dict[QuotaFeature, int]:
        feature_values = [feature.value for feature in features]
        if not feature_values:
            return {}
        result = await self._session.execute(
            select(QuotaUsageModel.feature, QuotaUsageModel.used).where(
                QuotaUsageModel.account_id == account_id,
                QuotaUsageModel.period_start == period_start,
                QuotaUsageModel.feature.in_(feature_values),
            )
        )
        return {QuotaFeature(row.feature): row.used for row in result.all()}

    async def increment(
        self,
        account_id: str,
        feature: QuotaFeature,
        period_start: date,
        amount: int,
    ) -> int:
        now = naive_utcnow()
        stmt = self._insert().values(
            account_id=account_id,
            feature=feature.value,
            period_start=period_start,
            used=amount,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id", "feature", "period_start"],
            set_={"used": QuotaUsageModel.used + amount, "updated_at": now},
        ).returning(QuotaUsageModel.used)
        result = await self._session.execute(stmt)
        used = result.scalar_one()
        await self._session.commit()
        return used

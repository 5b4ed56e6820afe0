"""Persistence for per-account, per-model request counters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Tuple

from sqlalchemy import case, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.windows import is_new_day, is_new_minute, naive_utc, start_of_day, start_of_minute
from ..domain.rate_limits import AbsentCounter, CounterRead, PresentCounter, RateLimitCounter
from ..models.rate_limit import RateLimitCounterModel


class RateLimitCounterRepository(ABC):
    """Interface describing reads and atomic writes of rolling-window counters."""

    @abstractmethod
    async def get(self, *, account_id: str, resource_id: str) -> CounterRead:
        """Return the stored counter, or an absent marker when none exists yet."""

    @abstractmethod
    async def increment(
        self,
        *,
        account_id: str,
        resource_id: str,
        now: datetime,
    ) -> RateLimitCounter:
        """Reset expired windows, add one to both counts and return the new state.

        Creates the row with both counts at 1 when it does not exist yet.
        """

    @abstractmethod
    async def decrement(self, *, account_id: str, resource_id: str) -> None:
        """Take one back out of both counts, never going below zero."""


class InMemoryRateLimitCounterRepository(RateLimitCounterRepository):
    """Dictionary-backed counters for development and tests."""

    def __init__(self) -> None:
        self._counters: Dict[Tuple[str, str], RateLimitCounter] = {}

    async def get(self, *, account_id: str, resource_id: str) -> CounterRead:
        counter = self._counters.get((account_id, resource_id))
        if counter is None:
            return AbsentCounter(account_id=account_id, resource_id=resource_id)
        return PresentCounter(counter=counter.model_copy())

    async def increment(
        self,
        *,
        account_id: str,
        resource_id: str,
        now: datetime,
    ) -> RateLimitCounter:
        key = (account_id, resource_id)
        current = self._counters.get(key)
        if current is None:
            current = RateLimitCounter(
                account_id=account_id,
                resource_id=resource_id,
                last_daily_reset=now,
                last_minute_reset=now,
            )
        update_fields: dict[str, object] = {}
        if is_new_day(current.last_daily_reset, now):
            update_fields["daily_count"] = 1
            update_fields["last_daily_reset"] = now
        else:
            update_fields["daily_count"] = current.daily_count + 1
        if is_new_minute(current.last_minute_reset, now):
            update_fields["minute_count"] = 1
            update_fields["last_minute_reset"] = now
        else:
            update_fields["minute_count"] = current.minute_count + 1
        counter = current.model_copy(update=update_fields)
        self._counters[key] = counter
        return counter.model_copy()

    async def decrement(self, *, account_id: str, resource_id: str) -> None:
        key = (account_id, resource_id)
        current = self._counters.get(key)
        if current is None:
            return
        self._counters[key] = current.model_copy(
            update={
                "daily_count": max(current.daily_count - 1, 0),
                "minute_count": max(current.minute_count - 1, 0),
            }
        )


class SqlAlchemyRateLimitCounterRepository(RateLimitCounterRepository):
    """Persists counters to the relational store using single-statement upserts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def _insert(self):
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(RateLimitCounterModel)
        if dialect == "sqlite":
            return sqlite.insert(RateLimitCounterModel)
        raise RuntimeError(f"Unsupported database dialect for counter upserts: {dialect}")

    async def get(self, *, account_id: str, resource_id: str) -> CounterRead:
        # Upserts bypass the identity map, so refresh any instance already loaded.
        result = await self._session.execute(
            select(RateLimitCounterModel)
            .where(
                RateLimitCounterModel.account_id == account_id,
                RateLimitCounterModel.resource_id == resource_id,
            )
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return AbsentCounter(account_id=account_id, resource_id=resource_id)
        return PresentCounter(counter=RateLimitCounter.model_validate(model))

    async def increment(
        self,
        *,
        account_id: str,
        resource_id: str,
        now: datetime,
    ) -> RateLimitCounter:
        stamp = naive_utc(now)
        day_start = naive_utc(start_of_day(now))
        minute_start = naive_utc(start_of_minute(now))
        new_day = RateLimitCounterModel.last_daily_reset < day_start
        new_minute = RateLimitCounterModel.last_minute_reset < minute_start

        stmt = self._insert().values(
            account_id=account_id,
            resource_id=resource_id,
            daily_count=1,
            minute_count=1,
            last_daily_reset=stamp,
            last_minute_reset=stamp,
            created_at=stamp,
            updated_at=stamp,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id", "resource_id"],
            set_={
                "daily_count": case((new_day, 1), else_=RateLimitCounterModel.daily_count + 1),
                "last_daily_reset": case(
                    (new_day, stamp), else_=RateLimitCounterModel.last_daily_reset
                ),
                "minute_count": case(
                    (new_minute, 1), else_=RateLimitCounterModel.minute_count + 1
                ),
                "last_minute_reset": case(
                    (new_minute, stamp), else_=RateLimitCounterModel.last_minute_reset
                ),
                "updated_at": stamp,
            },
        ).returning(
            RateLimitCounterModel.daily_count,
            RateLimitCounterModel.minute_count,
            RateLimitCounterModel.last_daily_reset,
            RateLimitCounterModel.last_minute_reset,
        )
        result = await self._session.execute(stmt)
        row = result.one()
        await self._session.commit()
        return RateLimitCounter(
            account_id=account_id,
            resource_id=resource_id,
            daily_count=row.daily_count,
            minute_count=row.minute_count,
            last_daily_reset=row.last_daily_reset,
            last_minute_reset=row.last_minute_reset,
        )

    async def decrement(self, *, account_id: str, resource_id: str) -> None:
        await self._session.execute(
            update(RateLimitCounterModel)
            .where(
                RateLimitCounterModel.account_id == account_id,
                RateLimitCounterModel.resource_id == resource_id,
            )
            .values(
                daily_count=case(
                    (RateLimitCounterModel.daily_count > 0, RateLimitCounterModel.daily_count - 1),
                    else_=0,
                ),
                minute_count=case(
                    (RateLimitCounterModel.minute_count > 0, RateLimitCounterModel.minute_count - 1),
                    else_=0,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()

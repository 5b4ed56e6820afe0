"""Read-only access to the account and subscription tables for plan lookups."""

from __future__ import annotations

from typing import Dict, Protocol, Sequence

from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.billing import AccountPlanRecord, SubscriptionStatus
from ..models.account import AccountModel, SubscriptionModel

# Statuses that may still govern access sort ahead of terminal ones.
_PREFERRED_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
)


class SubscriptionRepository(Protocol):
    async def fetch(self, account_id: str) -> AccountPlanRecord | None:
        ...

    async def fetch_many(self, account_ids: Sequence[str]) -> Dict[str, AccountPlanRecord]:
        ...


class InMemorySubscriptionRepository(SubscriptionRepository):
    """Holds pre-resolved plan records keyed by account id."""

    def __init__(self, records: Sequence[AccountPlanRecord] = ()) -> None:
        self._records: Dict[str, AccountPlanRecord] = {record.account_id: record for record in records}

    def put(self, record: AccountPlanRecord) -> None:
        self._records[record.account_id] = record

    async def fetch(self, account_id: str) -> AccountPlanRecord | None:
        return self._records.get(account_id)

    async def fetch_many(self, account_ids: Sequence[str]) -> Dict[str, AccountPlanRecord]:
        return {
            account_id: self._records[account_id]
            for account_id in account_ids
            if account_id in self._records
        }


class SqlAlchemySubscriptionRepository(SubscriptionRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def _plan_query(self):
        status_rank = case(
            (SubscriptionModel.status.in_(_PREFERRED_STATUSES), 0),
            else_=1,
        )
        return (
            select(
                AccountModel.id.label("account_id"),
                AccountModel.plan_slug,
                SubscriptionModel.plan.label("sub_plan"),
                SubscriptionModel.status,
                SubscriptionModel.current_period_end,
                SubscriptionModel.external_subscription_id,
            )
            .outerjoin(SubscriptionModel, SubscriptionModel.account_id == AccountModel.id)
            .order_by(
                status_rank,
                SubscriptionModel.current_period_end.desc().nulls_last(),
                SubscriptionModel.updated_at.desc().nulls_last(),
            )
        )

    async def fetch(self, account_id: str) -> AccountPlanRecord | None:
        result = await self._session.execute(
            self._plan_query().where(AccountModel.id == account_id).limit(1)
        )
        row = result.first()
        if row is None:
            return None
        return AccountPlanRecord.model_validate(dict(row._mapping))

    async def fetch_many(self, account_ids: Sequence[str]) -> Dict[str, AccountPlanRecord]:
        if not account_ids:
            return {}
        result = await self._session.execute(
            self._plan_query().where(AccountModel.id.in_(list(account_ids)))
        )
        records: Dict[str, AccountPlanRecord] = {}
        # Rows arrive in governing order, so the first row per account wins.
        for row in result.all():
            if row.account_id not in records:
                records[row.account_id] = AccountPlanRecord.model_validate(dict(row._mapping))
        return records

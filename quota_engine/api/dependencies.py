from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.windows import utcnow
from ..db import get_session
from ..domain.billing import PlanTier
from ..domain.rate_limits import RateLimitExceededPayload, RateLimitResult
from ..engine import EngineState, QuotaEngine


def get_engine_state(request: Request) -> EngineState:
    state = getattr(request.app.state, "engine_state", None)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Quota engine not initialised",
        )
    return state


async def get_quota_engine(
    state: EngineState = Depends(get_engine_state),
    session: AsyncSession = Depends(get_session),
) -> QuotaEngine:
    return QuotaEngine.for_session(state, session)


async def get_account_id(
    x_account_id: str | None = Header(default=None, alias="X-Account-ID"),
) -> str:
    if not x_account_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Account header missing",
        )
    return x_account_id


async def get_plan_tier(
    account_id: str = Depends(get_account_id),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> PlanTier:
    return await engine.subscriptions.resolve_plan_tier(account_id)


def enforce_rate_limit(
    resource_id: str | None = None,
    *,
    strict: bool = False,
) -> Callable[..., RateLimitResult]:
    """Dependency factory that gates a request on the per-model rate limits.

    Without a fixed ``resource_id`` the ``resource_id`` path parameter is used.
    The default mode checks and then records; ``strict`` uses the single-step
    acquire instead.
    """

    async def dependency(
        request: Request,
        account_id: str = Depends(get_account_id),
        plan: PlanTier = Depends(get_plan_tier),
        engine: QuotaEngine = Depends(get_quota_engine),
    ) -> RateLimitResult:
        resource = resource_id or request.path_params.get("resource_id")
        if not resource:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Resource identifier missing",
            )
        now = utcnow()
        if strict:
            result = await engine.rate_limits.acquire(account_id, resource, plan, now)
        else:
            result = await engine.check_rate_limit(account_id, resource, plan, now)
            if result.allowed:
                await engine.record_request(account_id, resource, plan, now)
        if not result.allowed and result.reason is not None:
            retry_after = result.retry_after_seconds(now)
            payload = RateLimitExceededPayload(
                reason=result.reason,
                resource_id=resource,
                remaining_daily=result.remaining_daily,
                remaining_minute=result.remaining_minute,
                retry_after=retry_after,
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=payload.model_dump(mode="json"),
                headers={"Retry-After": str(retry_after)},
            )
        return result

    return dependency

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ...domain.billing import PlanTier
from ...domain.quotas import ConsumeQuotaRequest, QuotaFeature, UsageResponse
from ...domain.rate_limits import RateLimitResult, RateLimitStatus
from ...engine import QuotaEngine
from ...services.quotas import QuotaExceededError, QuotaValidationError
from ..dependencies import enforce_rate_limit, get_account_id, get_plan_tier, get_quota_engine

router = APIRouter(tags=["quotas"])


class UsageListResponse(BaseModel):
    data: list[UsageResponse]


class ConsumeRequest(BaseModel):
    feature: QuotaFeature
    amount: int = Field(default=1)


@router.get("/usage", response_model=UsageListResponse)
async def list_usage(
    account_id: str = Depends(get_account_id),
    plan: PlanTier = Depends(get_plan_tier),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> UsageListResponse:
    usage = await engine.get_all_usage(account_id, plan)
    return UsageListResponse(data=usage)


@router.get("/usage/{feature}", response_model=UsageResponse)
async def get_usage(
    feature: QuotaFeature,
    account_id: str = Depends(get_account_id),
    plan: PlanTier = Depends(get_plan_tier),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> UsageResponse:
    return await engine.get_usage(account_id, feature, plan)


@router.post("/usage/consume", response_model=UsageResponse)
async def consume_quota(
    payload: ConsumeRequest,
    account_id: str = Depends(get_account_id),
    plan: PlanTier = Depends(get_plan_tier),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> UsageResponse:
    request = ConsumeQuotaRequest(
        account_id=account_id, feature=payload.feature, plan=plan, amount=payload.amount
    )
    try:
        return await engine.consume_quota(request)
    except QuotaValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except QuotaExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=exc.to_payload().model_dump(mode="json"),
        ) from exc


@router.get("/rate-limits/{resource_id}", response_model=RateLimitStatus)
async def get_rate_limit_status(
    resource_id: str,
    account_id: str = Depends(get_account_id),
    plan: PlanTier = Depends(get_plan_tier),
    engine: QuotaEngine = Depends(get_quota_engine),
) -> RateLimitStatus:
    result = await engine.get_rate_limit_status(account_id, resource_id, plan)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Resource is not metered")
    return result


@router.post("/rate-limits/{resource_id}/requests", response_model=RateLimitResult)
async def record_metered_request(
    resource_id: str,
    result: RateLimitResult = Depends(enforce_rate_limit()),
) -> RateLimitResult:
    return result

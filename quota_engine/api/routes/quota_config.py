from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ...domain.billing import CacheInvalidationResponse, PlanTier
from ...domain.quotas import (
    QuotaConfigCacheStats,
    QuotaConfigCreateRequest,
    QuotaConfigListResponse,
    QuotaConfigResponse,
    QuotaConfigUpdateRequest,
    QuotaFeature,
    QuotaLimit,
)
from ...engine import QuotaEngine
from ..dependencies import get_quota_engine

router = APIRouter(tags=["admin"])


@router.get("/quota-configs", response_model=QuotaConfigListResponse)
async def list_quota_configs(
    engine: QuotaEngine = Depends(get_quota_engine),
) -> QuotaConfigListResponse:
    configs = await engine.quota_configs.list_quota_configs()
    return QuotaConfigListResponse(data=configs)


@router.post(
    "/quota-configs",
    response_model=QuotaConfigResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_quota_config(
    payload: QuotaConfigCreateRequest,
    engine: QuotaEngine = Depends(get_quota_engine),
) -> QuotaConfigResponse:
    try:
        config = await engine.quota_configs.create_quota_config(payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return QuotaConfigResponse(data=config)


@router.patch("/quota-configs/{feature}/{plan}", response_model=QuotaConfigResponse)
async def update_quota_config(
    feature: QuotaFeature,
    plan: PlanTier,
    payload: QuotaConfigUpdateRequest,
    engine: QuotaEngine = Depends(get_quota_engine),
) -> QuotaConfigResponse:
    config = await engine.quota_configs.update_quota_config(feature, plan, payload)
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Quota config not found")
    return QuotaConfigResponse(data=config)


@router.get("/quota-configs/plans/{plan}", response_model=dict[QuotaFeature, QuotaLimit])
async def get_plan_quota_configs(
    plan: PlanTier,
    engine: QuotaEngine = Depends(get_quota_engine),
) -> dict[QuotaFeature, QuotaLimit]:
    return await engine.quota_configs.get_quota_configs_for_plan(plan)


@router.post("/quota-configs/refresh", response_model=QuotaConfigCacheStats)
async def refresh_quota_config_cache(
    engine: QuotaEngine = Depends(get_quota_engine),
) -> QuotaConfigCacheStats:
    await engine.quota_configs.refresh_cache()
    return engine.quota_configs.cache_stats()


@router.get("/quota-configs/cache", response_model=QuotaConfigCacheStats)
async def get_quota_config_cache_stats(
    engine: QuotaEngine = Depends(get_quota_engine),
) -> QuotaConfigCacheStats:
    return engine.quota_configs.cache_stats()


@router.post("/accounts/{account_id}/invalidate-caches", response_model=CacheInvalidationResponse)
async def invalidate_account_caches(
    account_id: str,
    engine: QuotaEngine = Depends(get_quota_engine),
) -> CacheInvalidationResponse:
    await engine.invalidate_user_caches(account_id)
    return CacheInvalidationResponse(account_id=account_id)

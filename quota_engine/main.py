from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI

from .api.routes.quota_config import router as quota_config_router
from .api.routes.quotas import router as quotas_router
from .core.config import get_settings
from .core.logging import configure_logging
from .db import dispose_engine, get_sessionmaker, init_db
from .engine import EngineState, build_engine_state
from .repositories.quotas import SqlAlchemyQuotaConfigRepository
from .services.quota_config import seed_default_quota_configs
from .telemetry import setup_prometheus

logger = structlog.get_logger()


async def seed_defaults() -> None:
    """Insert default quota configs that are not present yet."""

    async with get_sessionmaker()() as session:
        await seed_default_quota_configs(SqlAlchemyQuotaConfigRepository(session))


def create_app(state: EngineState | None = None, *, initialise_db: bool = True) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if initialise_db:
            await init_db()
            await seed_defaults()
        engine_state = state or build_engine_state(settings)
        app.state.engine_state = engine_state
        if await engine_state.redis.ping():
            logger.info("cache.redis_connected")
        logger.info("app.started", env=settings.app_env)
        try:
            yield
        finally:
            await engine_state.close()
            if initialise_db:
                await dispose_engine()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    @app.get("/healthz")
    def healthz() -> dict[str, str | bool]:
        return {"ok": True, "service": "quota-engine"}

    app.include_router(quotas_router)
    app.include_router(quota_config_router, prefix=settings.admin_api_prefix)

    if settings.enable_prometheus_metrics:
        setup_prometheus(app)

    return app


app = create_app()

"""
Seed script for default feature quota configs.

Run with:
  python -m scripts.seed_quota_configs

Existing (feature, plan) rows are left untouched.
"""
from __future__ import annotations

import asyncio

from quota_engine.core.config import get_settings
from quota_engine.core.logging import configure_logging
from quota_engine.db import dispose_engine, get_sessionmaker, init_db
from quota_engine.repositories.quotas import SqlAlchemyQuotaConfigRepository
from quota_engine.services.quota_config import seed_default_quota_configs


async def seed_configs() -> int:
    await init_db()
    async with get_sessionmaker()() as session:
        created = await seed_default_quota_configs(SqlAlchemyQuotaConfigRepository(session))
    await dispose_engine()
    return created


if __name__ == "__main__":
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    created = asyncio.run(seed_configs())
    print(f"Quota configs seeded: {created} added")

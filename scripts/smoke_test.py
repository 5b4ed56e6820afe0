"""Minimal end-to-end smoke test for the quota engine API."""

from __future__ import annotations

import asyncio
import os
from uuid import uuid4

from fastapi.testclient import TestClient

from quota_engine.db import dispose_engine, get_sessionmaker, init_db
from quota_engine.main import create_app
from quota_engine.models import AccountModel


async def _bootstrap_account() -> str:
    """Create a throwaway free-tier account."""

    await init_db()
    account_id = f"smoke-{uuid4().hex[:8]}"
    async with get_sessionmaker()() as session:
        session.add(AccountModel(id=account_id, plan_slug="free"))
        await session.commit()
    await dispose_engine()
    return account_id


def main() -> None:
    account_id = asyncio.run(_bootstrap_account())
    resource = os.getenv("SMOKE_RESOURCE", "gemini-2.5-flash-lite")
    headers = {"X-Account-ID": account_id}

    with TestClient(create_app()) as client:
        health = client.get("/healthz")
        health.raise_for_status()

        accepted = client.post(f"/rate-limits/{resource}/requests", headers=headers)
        accepted.raise_for_status()
        print("request accepted:", accepted.json())

        status = client.get(f"/rate-limits/{resource}", headers=headers)
        status.raise_for_status()
        print("rate limit status:", status.json())

        usage = client.get("/usage", headers=headers)
        usage.raise_for_status()
        print("feature usage:", usage.json())


if __name__ == "__main__":
    main()

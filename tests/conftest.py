"""Pytest configuration and fixtures for quota engine tests."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from quota_engine.core.config import Settings
from quota_engine.db.session import Base
from quota_engine import models  # noqa: F401 - ensure metadata is registered
from quota_engine.engine import QuotaEngine, build_engine_state
from quota_engine.services.cache import RedisCache

# Mid-day, mid-minute instant so small offsets stay inside the same windows.
NOW = datetime(2025, 6, 15, 12, 30, 10, tzinfo=timezone.utc)


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple]] = []

    def incr(self, key):
        self._ops.append(("incr", (key,)))
        return self

    def expire(self, key, ttl):
        self._ops.append(("expire", (key, ttl)))
        return self

    async def execute(self):
        self._redis._check()
        results = []
        for name, args in self._ops:
            if name == "incr":
                (key,) = args
                value = int(self._redis.store.get(key, "0")) + 1
                self._redis.store[key] = str(value)
                results.append(value)
            else:
                key, ttl = args
                self._redis.ttls[key] = ttl
                results.append(True)
        return results


class FakeRedis:
    """In-memory stand-in for the asyncio Redis client with decoded responses."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.calls: list[str] = []
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key):
        self.calls.append("get")
        self._check()
        return self.store.get(key)

    async def set(self, key, value):
        self.calls.append("set")
        self._check()
        self.store[key] = value
        return True

    async def setex(self, key, ttl, value):
        self.calls.append("setex")
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys):
        self.calls.append("delete")
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def mget(self, keys):
        self.calls.append("mget")
        self._check()
        return [self.store.get(key) for key in keys]

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        self.closed = True

    def pipeline(self):
        return FakePipeline(self)


@pytest.fixture
def settings():
    return Settings(redis_url=None)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_cache(fake_redis):
    return RedisCache(fake_redis, key_prefix="test:", default_ttl=30)


@pytest.fixture
def engine_state(settings, fake_redis):
    return build_engine_state(settings, redis_client=fake_redis)


@pytest.fixture
def memory_engine(engine_state):
    return QuotaEngine.in_memory(engine_state)


@pytest_asyncio.fixture
async def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session

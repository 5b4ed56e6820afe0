"""
Cache tiers sitting in front of the relational store.

Provides:
- A bounded, process-local TTL cache (tier 1)
- A Redis-backed cache shared across processes (tier 2)

Both tiers are optimisations only: every failure degrades to a miss.
"""
from __future__ import annotations

import json
import math
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, Sequence, Tuple, TypeVar

import structlog
from pydantic import ValidationError
from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError

from ..core.windows import ensure_utc, utcnow
from ..domain.billing import PlanSnapshot

logger = structlog.get_logger()

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LocalTTLCache(Generic[K, V]):
    """
    Fixed-capacity in-process cache with a per-entry time-to-live.

    On insert at capacity, expired entries are purged first; if the cache is
    still full the oldest entry is evicted. All access goes through a lock so
    the cache can be shared by every request handled in the process.
    """

    def __init__(
        self,
        max_size: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[K, Tuple[V, float]] = {}
        self._generation = 0
        self._lock = threading.Lock()

    def _expired(self, stored_at: float, now: float) -> bool:
        return now - stored_at > self._ttl

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, stored_at = entry
            if self._expired(stored_at, self._clock()):
                del self._entries[key]
                return None
            return value

    @property
    def generation(self) -> int:
        """Bumped by every delete or clear."""
        return self._generation

    def set(self, key: K, value: V, generation: int | None = None) -> bool:
        """Store ``value``. With ``generation``, skip the write if the cache was
        invalidated since that generation was read."""

        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self._max_size:
                for stale_key in [k for k, (_, ts) in self._entries.items() if self._expired(ts, now)]:
                    del self._entries[stale_key]
                if len(self._entries) >= self._max_size:
                    oldest = next(iter(self._entries))
                    del self._entries[oldest]
            # Re-inserting moves the key to the young end.
            self._entries.pop(key, None)
            self._entries[key] = (value, now)
            return True

    def delete(self, key: K) -> None:
        with self._lock:
            self._generation += 1
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def dynamic_snapshot_ttl(
    ttl_seconds: int,
    current_period_end: datetime | None,
    now: datetime,
) -> int:
    """Shorten the TTL so a cached snapshot never outlives the paid period by much."""

    if current_period_end is None:
        return ttl_seconds
    until_end = math.floor((ensure_utc(current_period_end) - ensure_utc(now)).total_seconds())
    return min(ttl_seconds, max(5, until_end - 30))


class RedisCache:
    """Thin async Redis wrapper that logs and swallows transport failures."""

    def __init__(
        self,
        client: Any | None,
        *,
        key_prefix: str = "quota:",
        default_ttl: int = 30,
    ) -> None:
        self._client = client
        self._prefix = key_prefix
        self._default_ttl = default_ttl

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get_json(self, key: str) -> Any | None:
        if self._client is None:
            return None
        full_key = self._key(key)
        try:
            data = await self._client.get(full_key)
        except RedisError as e:
            logger.warning("cache.redis_get_failed", key=full_key, error=str(e))
            return None
        if not data:
            return None
        try:
            return json.loads(data)
        except ValueError as e:
            logger.warning("cache.redis_decode_failed", key=full_key, error=str(e))
            return None

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        if self._client is None:
            return False
        full_key = self._key(key)
        expiry = ttl if ttl is not None else self._default_ttl
        try:
            serialized = json.dumps(value, default=str)
            if expiry > 0:
                await self._client.setex(full_key, expiry, serialized)
            else:
                await self._client.set(full_key, serialized)
            return True
        except RedisError as e:
            logger.warning("cache.redis_set_failed", key=full_key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        if self._client is None:
            return False
        full_key = self._key(key)
        try:
            await self._client.delete(full_key)
            return True
        except RedisError as e:
            logger.warning("cache.redis_delete_failed", key=full_key, error=str(e))
            return False

    async def increment(self, key: str, ttl: int | None = None) -> int:
        if self._client is None:
            return 0
        full_key = self._key(key)
        try:
            pipe = self._client.pipeline()
            pipe.incr(full_key)
            if ttl:
                pipe.expire(full_key, ttl)
            results = await pipe.execute()
            return int(results[0] or 0)
        except RedisError as e:
            logger.warning("cache.redis_increment_failed", key=full_key, error=str(e))
            return 0

    async def mget_json(self, keys: Sequence[str]) -> List[Any | None]:
        if self._client is None or not keys:
            return [None for _ in keys]
        full_keys = [self._key(key) for key in keys]
        try:
            values = await self._client.mget(full_keys)
        except RedisError as e:
            logger.warning("cache.redis_mget_failed", count=len(keys), error=str(e))
            return [None for _ in keys]
        decoded: List[Any | None] = []
        for value in values:
            try:
                decoded.append(json.loads(value) if value else None)
            except ValueError:
                decoded.append(None)
        return decoded

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # Plan snapshot helpers

    @staticmethod
    def plan_key(account_id: str) -> str:
        return f"sub:{account_id}"

    def _decode_snapshot(self, raw: Any, now: datetime) -> PlanSnapshot | None:
        if raw is None:
            return None
        try:
            snapshot = PlanSnapshot.model_validate(raw)
        except ValidationError as e:
            logger.warning("cache.redis_snapshot_invalid", error=str(e))
            return None
        age = (ensure_utc(now) - ensure_utc(snapshot.cached_at)).total_seconds()
        if age >= self._default_ttl:
            return None
        return snapshot

    async def get_plan_snapshot(
        self, account_id: str, now: datetime | None = None
    ) -> PlanSnapshot | None:
        raw = await self.get_json(self.plan_key(account_id))
        return self._decode_snapshot(raw, now or utcnow())

    async def get_plan_snapshots(
        self, account_ids: Sequence[str], now: datetime | None = None
    ) -> List[PlanSnapshot | None]:
        current = now or utcnow()
        raws = await self.mget_json([self.plan_key(account_id) for account_id in account_ids])
        return [self._decode_snapshot(raw, current) for raw in raws]

    async def set_plan_snapshot(self, snapshot: PlanSnapshot, now: datetime | None = None) -> bool:
        ttl = dynamic_snapshot_ttl(
            self._default_ttl, snapshot.current_period_end, now or utcnow()
        )
        return await self.set_json(
            self.plan_key(snapshot.account_id), snapshot.model_dump(mode="json"), ttl
        )

    async def invalidate_plan_snapshot(self, account_id: str) -> bool:
        return await self.delete(self.plan_key(account_id))

    # Display counters

    @staticmethod
    def counter_key(account_id: str, key: str) -> str:
        return f"rate:{account_id}:{key}"

    async def get_counter(self, account_id: str, key: str) -> int:
        value = await self.get_json(self.counter_key(account_id, key))
        if isinstance(value, int):
            return value
        return 0

    async def increment_counter(self, account_id: str, key: str, ttl: int) -> int:
        return await self.increment(self.counter_key(account_id, key), ttl)


def build_redis_client(url: str | None) -> Any | None:
    """Create an asyncio Redis client, or ``None`` when no URL is configured."""

    if not url:
        logger.info("cache.redis_disabled")
        return None
    return redis_asyncio.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )

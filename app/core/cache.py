"""
Shared Key-Value Store for the security components.

Rate counters, penalty markers, API keys, sessions and mirrored audit
events all live here. Redis backend for production, in-memory fallback
for development and tests.

Usage:
    from app.core.cache import create_store

    store = create_store(settings.redis_url)

    count = await store.incr_with_ttl("rate_limit:ip:1.2.3.4:2024-01-01T12:00", 60)
    await store.set("audit:abc", payload, ttl=86400)
    remaining = await store.ttl("rate_limit:penalty:ip:1.2.3.4")
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the backing store cannot complete an operation."""


class Store(ABC):
    """Narrow async interface the security components depend on."""

    backend: str = "abstract"

    @abstractmethod
    async def incr_with_ttl(self, key: str, ttl: int) -> int:
        """Atomically increment key and (re)set its TTL; return the new value."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        """Set a string value with optional TTL (seconds)."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Get a string value or None."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -2 when missing, -1 when persistent."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key; True if something was removed."""

    @abstractmethod
    async def ping(self) -> bool:
        """Health check."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryStore(Store):
    """
    In-process store for development/testing.

    Atomic with respect to coroutines in this process only; counters are
    not shared across workers.
    """

    backend = "memory"

    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()

    def _alive(self, key: str, now: float) -> tuple[str, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and now >= expires_at:
            del self._data[key]
            return None
        return entry

    async def incr_with_ttl(self, key: str, ttl: int) -> int:
        async with self._lock:
            now = time.monotonic()
            entry = self._alive(key, now)
            value = int(entry[0]) + 1 if entry else 1
            self._data[key] = (str(value), now + ttl)
            return value

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        async with self._lock:
            expires_at = time.monotonic() + ttl if ttl else None
            self._data[key] = (value, expires_at)

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._alive(key, time.monotonic())
            return entry[0] if entry else None

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def ttl(self, key: str) -> int:
        async with self._lock:
            now = time.monotonic()
            entry = self._alive(key, now)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return max(0, int(round(entry[1] - now)))

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def keys(self, prefix: str) -> list[str]:
        """Live keys starting with prefix (diagnostics and tests)."""
        async with self._lock:
            now = time.monotonic()
            return [k for k in list(self._data) if k.startswith(prefix) and self._alive(k, now)]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()


class RedisStore(Store):
    """Redis-backed store for production."""

    backend = "redis"

    def __init__(self, redis_url: str, client: redis.Redis | None = None):
        self._redis_url = redis_url
        self._redis = client or redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    async def incr_with_ttl(self, key: str, ttl: int) -> int:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl)
                count, _ = await pipe.execute()
            return int(count)
        except RedisError as e:
            raise StoreError(f"INCR failed for {key}: {e}") from e

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        try:
            if ttl:
                await self._redis.setex(key, ttl, value)
            else:
                await self._redis.set(key, value)
        except RedisError as e:
            raise StoreError(f"SET failed for {key}: {e}") from e

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except RedisError as e:
            raise StoreError(f"GET failed for {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        try:
            return await self._redis.exists(key) > 0
        except RedisError as e:
            raise StoreError(f"EXISTS failed for {key}: {e}") from e

    async def ttl(self, key: str) -> int:
        try:
            return int(await self._redis.ttl(key))
        except RedisError as e:
            raise StoreError(f"TTL failed for {key}: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            return await self._redis.delete(key) > 0
        except RedisError as e:
            raise StoreError(f"DELETE failed for {key}: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("Redis store closed: %s", self._redis_url.split("@")[-1])


def create_store(redis_url: str | None) -> Store:
    """Pick the backend from configuration."""
    if redis_url:
        logger.info("Shared store: Redis (%s)", redis_url.split("@")[-1])
        return RedisStore(redis_url)
    logger.warning("Shared store: in-memory fallback (counters are per-process)")
    return InMemoryStore()


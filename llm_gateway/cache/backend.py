"""Cache backend implementations.

Defines the CacheBackend ABC and two concrete implementations:
- RedisCacheBackend: Production backend using Redis with JSON serialization
- InMemoryCacheBackend: Dict-based backend with TTL, for testing/dev

The cache is an accelerator only. The conversation store stays the source
of truth, so every Redis failure is logged and treated as a miss.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import time
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as aioredis
import structlog

from llm_gateway.config import Settings

log = structlog.get_logger(__name__)


class CacheBackend(ABC):
    """Abstract interface all cache backends must implement."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return cached value for key, or None if not found / expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value under key with TTL in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key from cache (no-op if key does not exist)."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns deleted count."""

    async def close(self) -> None:
        """Release backend resources."""


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCacheBackend(CacheBackend):
    """Production cache backend backed by Redis.

    Values are JSON-serialised so they round-trip cleanly without pickle
    security risks. The client is created lazily so construction never
    touches the network.
    """

    def __init__(self, redis_url: str) -> None:
        self._redis_url = redis_url
        self._client: aioredis.Redis | None = None

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._get_client().get(key)
        except aioredis.RedisError as exc:
            log.warning("cache.redis.get_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self._get_client().setex(key, ttl, json.dumps(value, default=str))
        except aioredis.RedisError as exc:
            log.warning("cache.redis.set_failed", key=key, error=str(exc))

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(key)
        except aioredis.RedisError as exc:
            log.warning("cache.redis.delete_failed", key=key, error=str(exc))

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern using SCAN + DEL."""
        client = self._get_client()
        deleted = 0
        try:
            async for key in client.scan_iter(match=pattern, count=100):
                await client.delete(key)
                deleted += 1
        except aioredis.RedisError as exc:
            log.warning("cache.redis.delete_pattern_failed", pattern=pattern, error=str(exc))
        log.debug("cache.redis.pattern_deleted", pattern=pattern, deleted=deleted)
        return deleted

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# In-memory backend (testing / dev fallback)
# ---------------------------------------------------------------------------


class _CacheEntry:
    """Single entry stored by InMemoryCacheBackend."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, ttl: int) -> None:
        self.value = value
        self.expires_at: float = time.monotonic() + ttl

    @property
    def is_expired(self) -> bool:
        return time.monotonic() >= self.expires_at


class InMemoryCacheBackend(CacheBackend):
    """Dict-backed cache with TTL support.

    Guarded by an asyncio.Lock. Suitable for testing and single-process
    dev environments. Does NOT persist across process restarts.
    """

    def __init__(self) -> None:
        self._store: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None or entry.is_expired:
                if entry is not None:
                    del self._store[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            self._store[key] = _CacheEntry(value, ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern (fnmatch semantics)."""
        async with self._lock:
            to_delete = [k for k in self._store if fnmatch.fnmatch(k, pattern)]
            for k in to_delete:
                del self._store[k]
            return len(to_delete)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_cache_backend(settings: Settings) -> CacheBackend:
    """Return Redis when REDIS_URL is configured, otherwise the in-memory backend."""
    if settings.redis_url:
        log.info("cache.backend_selected", backend="redis", url=settings.redis_url)
        return RedisCacheBackend(settings.redis_url)

    log.info("cache.backend_selected", backend="memory")
    return InMemoryCacheBackend()

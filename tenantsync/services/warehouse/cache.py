from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tenantsync.core.config import Settings, get_settings
from tenantsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_KEY_PREFIX = "tenantsync:wh:"

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


class QueryCache(Protocol):
    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, value: dict[str, Any], ttl_s: int) -> None: ...


class InMemoryQueryCache:
    # Per-process cache; entries expire lazily on read.
    def __init__(self, *, max_entries: int = 512, time_source: Callable[[], float] | None = None) -> None:
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._max_entries = max_entries
        self._time = time_source or time.monotonic

    async def get(self, key: str) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._time():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: dict[str, Any], ttl_s: int) -> None:
        if ttl_s <= 0:
            return
        if len(self._entries) >= self._max_entries:
            # Evict the entry closest to expiry.
            oldest = min(self._entries, key=lambda item: self._entries[item][0])
            self._entries.pop(oldest, None)
        self._entries[key] = (self._time() + ttl_s, value)

    def clear(self) -> None:
        self._entries.clear()


async def get_cache_redis() -> Redis:
    # Reuse one Redis client per event loop.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            _redis_pool = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


class RedisQueryCache:
    # Shared cache across API and worker processes; Redis outages degrade to misses.
    def __init__(self, redis: Redis | None = None) -> None:
        self._redis = redis

    async def _client(self) -> Redis:
        if self._redis is None:
            self._redis = await get_cache_redis()
        return self._redis

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await (await self._client()).get(_KEY_PREFIX + key)
        except RedisError as exc:
            increment_counter("warehouse_cache_errors_total")
            logger.warning("warehouse_cache_read_failed", exc_info=exc)
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def set(self, key: str, value: dict[str, Any], ttl_s: int) -> None:
        if ttl_s <= 0:
            return
        try:
            await (await self._client()).set(_KEY_PREFIX + key, json.dumps(value), ex=ttl_s)
        except RedisError as exc:
            increment_counter("warehouse_cache_errors_total")
            logger.warning("warehouse_cache_write_failed", exc_info=exc)


_memory_cache = InMemoryQueryCache()


def get_query_cache(settings: Settings | None = None) -> QueryCache | None:
    # None disables caching entirely; correctness never depends on a hit.
    settings = settings or get_settings()
    backend = settings.warehouse_cache_backend.lower()
    if backend == "memory":
        return _memory_cache
    if backend == "redis":
        return RedisQueryCache()
    return None

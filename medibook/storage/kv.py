"""Key-value store with per-entry TTL.

Holds short-lived state (video meetings) behind a narrow interface so
callers never touch a process-wide dict. Redis backs it in production; the
in-memory variant serves tests and single-process runs.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

import redis.asyncio as aioredis

from medibook.config import settings

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Any | None: ...

    async def delete(self, key: str) -> None: ...


class RedisKeyValueStore:
    """JSON values under a namespaced key, expired by Redis."""

    def __init__(self, redis: aioredis.Redis, namespace: str = "medibook:kv") -> None:
        self._redis = redis
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._redis.set(self._key(key), json.dumps(value, default=str), ex=max(int(ttl_seconds), 1))

    async def get(self, key: str) -> Any | None:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable value at %s", self._key(key))
            await self._redis.delete(self._key(key))
            return None

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))


class InMemoryKeyValueStore:
    """Dict-backed store; expired entries are evicted when touched or purged."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[float, Any]] = {}

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._data[key] = (self._clock() + ttl_seconds, value)

    async def get(self, key: str) -> Any | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._data.items() if now >= expires_at]
        for key in expired:
            del self._data[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


def build_kv_store() -> KeyValueStore:
    """Pick the backend named by `settings.video.kv_backend`."""
    if settings.video.kv_backend == "redis":
        from medibook.db.engine import redis_client

        return RedisKeyValueStore(redis_client)
    return InMemoryKeyValueStore()

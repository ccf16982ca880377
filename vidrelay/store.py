"""
Key-value data-access layer.

Key schema:
  videos:{slug}  → String  (origin URL, no TTL)

Both stores expose the same async surface: get, set, delete, list_prefix,
ping and close. RedisStore is used in production; MemoryStore backs local
development and the test suite.
"""
from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class RedisStore:
    def __init__(self, url: str, client: Optional[aioredis.Redis] = None) -> None:
        self.url = url
        self.redis = client

    async def connect(self) -> None:
        """Create and verify the Redis connection. Crash loudly on failure."""
        if self.redis is None:
            self.redis = aioredis.from_url(self.url, decode_responses=True)
        try:
            await self.redis.ping()
        except Exception as exc:
            raise RuntimeError(
                f"Cannot connect to Redis at {self.url}: {exc}"
            ) from exc
        logger.info("Connected to Redis at %s", self.url)

    async def close(self) -> None:
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def set(self, key: str, value: str) -> None:
        await self.redis.set(key, value)

    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        return await self.redis.delete(key) > 0

    async def list_prefix(self, prefix: str) -> dict[str, str]:
        """Return every key starting with prefix, mapped to its value."""
        keys: list[str] = []
        cursor = 0
        while True:
            cursor, batch = await self.redis.scan(cursor, match=f"{prefix}*", count=100)
            keys.extend(batch)
            if cursor == 0:
                break

        if not keys:
            return {}

        values = await self.redis.mget(keys)
        # A key may vanish between SCAN and MGET
        return {k: v for k, v in zip(keys, values) if v is not None}


class MemoryStore:
    """Dict-backed store. No persistence across restarts."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def list_prefix(self, prefix: str) -> dict[str, str]:
        return {k: v for k, v in self._data.items() if k.startswith(prefix)}


def build_store(backend: str, redis_url: str):
    if backend == "memory":
        return MemoryStore()
    return RedisStore(redis_url)

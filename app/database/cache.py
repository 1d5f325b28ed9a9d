"""Durable key-value cache backed by Redis."""

import logging
from typing import Optional

import redis.asyncio as redis

from app.config import settings

logger = logging.getLogger(__name__)


class CacheBackend:
    """Async key-value store used for credentials, checkpoints and snapshots.

    Writes are plain overwrites (last writer wins); no transactional
    guarantees are required by any caller.
    """

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError


class RedisCache(CacheBackend):
    """CacheBackend implementation on top of redis-py's asyncio client."""

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        """Initialize Redis cache.

        Args:
            url: Redis connection URL (defaults to settings.redis_url).
            client: Pre-built client, mainly for tests.
        """
        self.url = url or settings.redis_url
        self._client = client or redis.from_url(self.url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str) -> None:
        await self._client.set(key, value)

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        await self._client.setex(key, ttl_seconds, value)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()


_cache: Optional[CacheBackend] = None


def get_cache() -> CacheBackend:
    """Get the process-wide cache backend (FastAPI dependency)."""
    global _cache
    if _cache is None:
        _cache = RedisCache()
    return _cache

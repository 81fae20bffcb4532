# cache.py
"""
Shared TTL cache used by every resource handler.

Values are JSON-serialised and stored under deterministic keys with a per-key
expiry. The cache is best-effort: backend failures are logged and treated as a
miss (reads) or ignored (writes), so a response never depends on the cache.

When no backend is configured, ``init_cache`` returns a ``NullCacheStore`` that
never stores anything and never contacts a backend.
"""
import json
import logging
from typing import Any, Iterable, Optional
from urllib.parse import urlsplit

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from config import Settings

logger = logging.getLogger(__name__)

REDIS_SCHEMES = ("redis", "rediss")


class CacheStore:
    """Interface shared by the live and the no-op cache."""

    enabled: bool = False

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def delete(self, keys: Iterable[str]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class NullCacheStore(CacheStore):
    """Pass-through store used when the cache backend is not configured."""

    enabled = False

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        return None

    async def delete(self, keys: Iterable[str]) -> None:
        return None


class RedisCacheStore(CacheStore):
    enabled = True

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisCacheStore":
        client = aioredis.from_url(
            settings.redis_url,
            password=settings.redis_token,
            encoding="utf-8",
            decode_responses=True,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, json.dumps(value), ex=max(int(ttl_seconds), 1))
            logger.debug(f"Cached {key} ttl={ttl_seconds}")
        except (RedisError, TypeError, ValueError) as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def delete(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        try:
            await self.client.delete(*keys)
        except RedisError as e:
            logger.warning(f"Cache delete failed for {keys}: {e}")

    async def close(self) -> None:
        await self.client.aclose()


def _is_redis_url(url: str) -> bool:
    try:
        return urlsplit(url).scheme.lower() in REDIS_SCHEMES
    except ValueError:
        return False


def init_cache(settings: Settings) -> CacheStore:
    """Build the process-wide cache: live for a Redis URL plus token, no-op otherwise."""
    if not settings.cache_configured:
        logger.info("Cache backend not configured; caching disabled")
        return NullCacheStore()
    if not _is_redis_url(settings.redis_url):
        logger.error("Cache backend URL must use redis:// or rediss://; caching disabled")
        return NullCacheStore()
    logger.info(f"Cache backend enabled at {urlsplit(settings.redis_url).hostname}")
    return RedisCacheStore.from_settings(settings)

"""Cache backends for sync progress and status.

The sync monitor mirrors its progress here so that API workers and the CLI
can poll a running sync without touching the database.
"""

import asyncio
import json
import time
from typing import Any

from .config import get_settings
from .logging import get_context_logger

logger = get_context_logger(__name__)


# Cache TTL configurations (in seconds)
CACHE_TTL = {
    "sync_progress": 3600,  # a stale progress entry outlives no sync
    "sync_result": 86400,  # last result kept for a day
    "default": 300,
}

# Cache key prefixes
KEY_PREFIX = "licsync:"


class CacheBackend:
    """Abstract cache backend interface."""

    async def get(self, key: str) -> Any | None:
        """Get value from cache."""
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Set value in cache."""
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        raise NotImplementedError

    async def close(self) -> None:
        """Close the cache connection."""
        pass


class InMemoryCache(CacheBackend):
    """In-memory cache for development and tests."""

    def __init__(self):
        self._cache: dict[str, tuple[Any, float | None]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            if key not in self._cache:
                return None

            value, expires_at = self._cache[key]
            if expires_at and time.time() > expires_at:
                del self._cache[key]
                return None

            return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        async with self._lock:
            expires_at = time.time() + ttl if ttl else None
            self._cache[key] = (value, expires_at)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._cache.pop(key, None) is not None


class RedisCache(CacheBackend):
    """Redis-based cache for production.

    Cache failures are logged and reported as misses; progress polling must
    never break a sync.
    """

    def __init__(self, redis_client):
        self._redis = redis_client

    async def get(self, key: str) -> Any | None:
        try:
            data = await self._redis.get(key)
            if data:
                return json.loads(data)
            return None
        except Exception as e:
            logger.warning(f"Redis cache get error: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            data = json.dumps(value, default=str)
            if ttl:
                await self._redis.setex(key, ttl, data)
            else:
                await self._redis.set(key, data)
            return True
        except Exception as e:
            logger.warning(f"Redis cache set error: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            return await self._redis.delete(key) > 0
        except Exception as e:
            logger.warning(f"Redis cache delete error: {e}")
            return False

    async def close(self) -> None:
        await self._redis.aclose()


# Global cache instance
_cache: CacheBackend | None = None


async def get_cache() -> CacheBackend:
    """Get or create cache instance.

    Uses Redis when reachable, falls back to in-memory otherwise.
    """
    global _cache

    if _cache is not None:
        return _cache

    settings = get_settings()

    if settings.redis_url:
        import redis.asyncio as redis

        client = redis.from_url(settings.redis_url)
        try:
            await client.ping()
            _cache = RedisCache(client)
            logger.info("Using Redis cache backend")
        except Exception as e:
            logger.warning(f"Redis unavailable for caching: {e}")
            await client.aclose()
            _cache = InMemoryCache()
    else:
        _cache = InMemoryCache()
        logger.info("Using in-memory cache backend")

    return _cache


def set_cache(cache: CacheBackend | None) -> None:
    """Install a cache instance (used by tests and the CLI)."""
    global _cache
    _cache = cache


async def close_cache() -> None:
    """Close the cache connection."""
    global _cache
    if _cache:
        await _cache.close()
        _cache = None


# =========================
# Cache Key Builders
# =========================


def sync_progress_key() -> str:
    """Build cache key for the progress of the running sync."""
    return f"{KEY_PREFIX}sync:progress"


def sync_result_key() -> str:
    """Build cache key for the last sync result."""
    return f"{KEY_PREFIX}sync:last_result"

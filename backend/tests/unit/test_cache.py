"""Unit tests for the progress cache backends.

Run with: pytest backend/tests/unit/test_cache.py -v
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from licsync.cache import (
    InMemoryCache,
    RedisCache,
    get_cache,
    set_cache,
)


class TestInMemoryCache:
    """Tests for the in-memory backend."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        """Test basic storage operations."""
        cache = InMemoryCache()

        await cache.set("k", {"processed": 1})

        assert await cache.get("k") == {"processed": 1}
        assert await cache.delete("k") is True
        assert await cache.delete("k") is False
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_expired_entries_are_misses(self):
        """Test that an entry past its TTL is dropped."""
        cache = InMemoryCache()

        with patch("licsync.cache.time.time", return_value=1000.0):
            await cache.set("k", "v", ttl=10)
        with patch("licsync.cache.time.time", return_value=1011.0):
            assert await cache.get("k") is None


class TestRedisCache:
    """Tests for the Redis backend against a mocked client."""

    @pytest.mark.asyncio
    async def test_values_are_json_encoded(self):
        """Test that values round through JSON with the TTL applied."""
        client = AsyncMock()
        cache = RedisCache(client)

        await cache.set("k", {"percent": 50.0}, ttl=60)

        client.setex.assert_awaited_once_with("k", 60, json.dumps({"percent": 50.0}))
        client.get.return_value = b'{"percent": 50.0}'
        assert await cache.get("k") == {"percent": 50.0}

    @pytest.mark.asyncio
    async def test_errors_are_misses(self):
        """Test that Redis failures never reach the caller."""
        client = AsyncMock()
        client.get.side_effect = ConnectionError("down")
        client.set.side_effect = ConnectionError("down")
        cache = RedisCache(client)

        assert await cache.get("k") is None
        assert await cache.set("k", 1) is False


class TestGlobalCache:
    """Tests for the process-wide cache instance."""

    @pytest.mark.asyncio
    async def test_installed_cache_is_returned(self):
        """Test that an installed cache is used as is."""
        cache = InMemoryCache()
        set_cache(cache)
        try:
            assert await get_cache() is cache
        finally:
            set_cache(None)

"""Tests for the classification result cache."""
import pytest

from redis.exceptions import ConnectionError as RedisConnectionError

from customs_pipeline.cache.result_cache import (
    InMemoryResultCache,
    RedisResultCache,
    UnavailableResultCache,
    cache_key,
    connect_result_cache,
)
from customs_pipeline.models.customs import ClassificationResult


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class BrokenRedis:
    """Redis client whose every command fails."""

    async def ping(self):
        raise RedisConnectionError("Connection refused")

    async def get(self, key):
        raise RedisConnectionError("Connection refused")

    async def setex(self, key, ttl, value):
        raise RedisConnectionError("Connection refused")

    async def delete(self, key):
        raise RedisConnectionError("Connection refused")

    async def aclose(self):
        return None


class RecordingRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0


@pytest.fixture
def result():
    return ClassificationResult(
        description="Red Cotton T-Shirt, Size L",
        hs_code="610910",
        confidence=0.85,
        flagged=False
    )


class TestCacheKey:
    """Tests for key derivation."""

    def test_key_ignores_surrounding_whitespace(self):
        assert cache_key("  Red Cotton T-Shirt  ") == cache_key("Red Cotton T-Shirt")

    def test_key_is_prefixed_digest(self):
        key = cache_key("Red Cotton T-Shirt")
        assert key.startswith("classification:")
        assert len(key) == len("classification:") + 64

    def test_different_descriptions_differ(self):
        assert cache_key("Red Cotton T-Shirt") != cache_key("Blue Cotton T-Shirt")


class TestInMemoryResultCache:
    """Tests for the process-local backend."""

    @pytest.mark.asyncio
    async def test_put_then_get(self, result):
        cache = InMemoryResultCache()
        await cache.put("k", result)
        cached = await cache.get("k")
        assert cached["hs_code"] == "610910"
        assert cached["confidence"] == 0.85

    @pytest.mark.asyncio
    async def test_repeated_put_is_idempotent(self, result):
        cache = InMemoryResultCache()
        await cache.put("k", result)
        first = await cache.get("k")
        await cache.put("k", result)
        assert await cache.get("k") == first

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, result):
        clock = FakeClock()
        cache = InMemoryResultCache(default_ttl=60, clock=clock)
        await cache.put("k", result)
        clock.now += 59
        assert await cache.get("k") is not None
        clock.now += 1
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_zero_ttl_is_not_replaced_by_default(self, result):
        clock = FakeClock()
        cache = InMemoryResultCache(default_ttl=604800, clock=clock)
        await cache.put("k", result, ttl=0)
        assert await cache.get("k") is None

        client = RecordingRedis()
        await RedisResultCache(client, default_ttl=604800).put("k", result, ttl=0)
        assert "k" not in client.store

    @pytest.mark.asyncio
    async def test_delete_reports_existence(self, result):
        cache = InMemoryResultCache()
        await cache.put("k", result)
        assert await cache.delete("k") is True
        assert await cache.delete("k") is False
        assert await cache.get("k") is None


class TestRedisResultCache:
    """Tests for the Redis backend."""

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self, result):
        cache = RedisResultCache(BrokenRedis())
        assert await cache.ping() is False
        assert await cache.get("k") is None
        await cache.put("k", result)
        assert await cache.delete("k") is False

    @pytest.mark.asyncio
    async def test_put_uses_ttl_and_json(self, result):
        client = RecordingRedis()
        cache = RedisResultCache(client, default_ttl=120)
        await cache.put("k", result)
        assert client.ttls["k"] == 120
        assert (await cache.get("k"))["hs_code"] == "610910"

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_a_miss(self):
        client = RecordingRedis()
        client.store["k"] = "not json"
        cache = RedisResultCache(client)
        assert await cache.get("k") is None


class TestConnectResultCache:
    """Tests for backend selection."""

    @pytest.mark.asyncio
    async def test_memory_backend(self, settings):
        cache = await connect_result_cache(settings)
        assert isinstance(cache, InMemoryResultCache)
        assert cache.available

    @pytest.mark.asyncio
    async def test_disabled_backend(self, settings):
        settings.CACHE_BACKEND = "none"
        cache = await connect_result_cache(settings)
        assert isinstance(cache, UnavailableResultCache)
        assert not cache.available
        assert await cache.get("k") is None
        assert await cache.delete("k") is False

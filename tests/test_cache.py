"""
Unit tests for the cache-aside facade.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from prometheus_client import CollectorRegistry

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from kvcache import cache
from kvcache.cache import RedisCache
from kvcache.config import CacheSettings
from kvcache.errors import InvalidTtlError, NotInitialisedError
from kvcache.metrics import MetricsCollector
from kvcache.store import RedisStore
from kvcache.test_helpers import FakeClientFactory, FakeServer


@pytest.fixture
def metrics():
    """Metrics bound to a private registry."""
    return MetricsCollector(CollectorRegistry())


@pytest.fixture
def server():
    """In-memory backend."""
    return FakeServer()


def cache_requests(metrics, result, name="test-cache"):
    return metrics.registry.get_sample_value(
        "kvcache_cache_requests_total", {"cache": name, "result": result}
    ) or 0


class TestRedisCache:
    """Test cases for RedisCache.wrap and delegation."""

    @pytest.fixture
    def redis_cache(self, server, metrics):
        """Cache over a fake-backed store."""
        store = RedisStore(
            name="test-cache",
            pool_options={"create_retry_delay": 0},
            client_factory=FakeClientFactory(server),
            metrics=metrics
        )
        return RedisCache(store)

    @pytest.mark.asyncio
    async def test_wrap_miss_then_hit(self, redis_cache, server, metrics):
        """Test that the producer runs once and its result is cached."""
        producer = AsyncMock(return_value={"price": 52.5})

        first = await redis_cache.wrap("pricing:BRN", producer, ttl_in_seconds=30)
        second = await redis_cache.wrap("pricing:BRN", producer, ttl_in_seconds=30)

        assert first == second == {"price": 52.5}
        producer.assert_awaited_once()
        assert 0 < server.ttl("pricing:BRN") <= 30
        assert cache_requests(metrics, "miss") == 1
        assert cache_requests(metrics, "hit") == 1

    @pytest.mark.asyncio
    async def test_wrap_hit_skips_second_producer(self, redis_cache):
        """Test that a later producer is not called once a value is stored."""
        first = AsyncMock(return_value="stored")
        second = AsyncMock(return_value="other")

        await redis_cache.wrap("key", first, ttl_in_seconds=30)

        assert await redis_cache.wrap("key", second, ttl_in_seconds=30) == "stored"
        second.assert_not_called()

    @pytest.mark.asyncio
    async def test_wrap_accepts_sync_producer(self, redis_cache):
        """Test a plain callable as producer."""
        producer = MagicMock(return_value="computed")

        assert await redis_cache.wrap("key", producer, ttl_in_seconds=5) == "computed"
        assert await redis_cache.wrap("key", producer, ttl_in_seconds=5) == "computed"
        producer.assert_called_once()

    @pytest.mark.asyncio
    async def test_wrap_bypasses_without_ttl(self, redis_cache, server, metrics):
        """Test that no TTL at all means no caching."""
        producer = AsyncMock(return_value="fresh")

        assert await redis_cache.wrap("key", producer) == "fresh"
        assert await redis_cache.wrap("key", producer) == "fresh"

        assert producer.await_count == 2
        assert server.value("key") is None
        assert cache_requests(metrics, "bypass") == 2

    @pytest.mark.asyncio
    async def test_wrap_uses_default_ttl(self, redis_cache, server):
        """Test that the store default TTL enables caching."""
        redis_cache.set_default_ttl_in_s(120)
        producer = AsyncMock(return_value="fresh")

        await redis_cache.wrap("key", producer)
        await redis_cache.wrap("key", producer)

        producer.assert_awaited_once()
        assert 0 < server.ttl("key") <= 120

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -1, "later", False, float("inf")])
    async def test_wrap_rejects_invalid_ttl(self, redis_cache, ttl):
        """Test that an invalid explicit TTL is an error, not a bypass."""
        producer = AsyncMock(return_value="fresh")

        with pytest.raises(InvalidTtlError):
            await redis_cache.wrap("key", producer, ttl_in_seconds=ttl)

        producer.assert_not_called()

    @pytest.mark.asyncio
    async def test_wrap_treats_falsy_cached_value_as_miss(self, redis_cache, server):
        """Test that a cached falsy value is recomputed."""
        server.put("flag", "0")
        producer = AsyncMock(return_value=1)

        assert await redis_cache.wrap("flag", producer, ttl_in_seconds=10) == 1
        producer.assert_awaited_once()
        assert server.value("flag") == "1"

    @pytest.mark.asyncio
    async def test_wrap_does_not_store_none(self, redis_cache, server):
        """Test that a None result is returned but not cached."""
        producer = AsyncMock(return_value=None)

        assert await redis_cache.wrap("key", producer, ttl_in_seconds=10) is None
        assert server.value("key") is None
        assert "SETEX" not in server.command_names()

    @pytest.mark.asyncio
    async def test_wrap_propagates_producer_errors(self, redis_cache, server):
        """Test that producer failures surface and nothing is stored."""
        producer = AsyncMock(side_effect=RuntimeError("upstream down"))

        with pytest.raises(RuntimeError):
            await redis_cache.wrap("key", producer, ttl_in_seconds=10)

        assert server.value("key") is None

    @pytest.mark.asyncio
    async def test_delegates_to_store(self, redis_cache):
        """Test the store operations exposed on the cache."""
        with patch.object(redis_cache.store, 'delete_all', new_callable=AsyncMock) as mock_delete_all:
            mock_delete_all.return_value = 3

            assert await redis_cache.delete_all("user:*") == 3
            mock_delete_all.assert_called_once_with("user:*")

        assert await redis_cache.set("a", [1, 2]) == "OK"
        assert await redis_cache.get("a") == [1, 2]
        assert await redis_cache.getset("a", [3]) == [1, 2]
        assert await redis_cache.keys() == ["a"]
        assert await redis_cache.delete(["a"]) == 1
        assert redis_cache.get_name() == "test-cache"
        assert redis_cache.get_status()["name"] == "test-cache"


class TestModuleCache:
    """Test cases for the module-level singleton."""

    @pytest.fixture(autouse=True)
    def clean_singleton(self):
        """Start and end every test without a module cache."""
        cache._cache = None
        yield
        cache._cache = None

    @pytest.fixture
    def factory(self, server):
        """Fake backend client factory."""
        return FakeClientFactory(server)

    def test_use_before_init_raises(self):
        """Test that every entry point requires init."""
        with pytest.raises(NotInitialisedError) as exc_info:
            cache.get_store()

        assert str(exc_info.value) == "RedisCache not initialised"

        with pytest.raises(NotInitialisedError):
            cache.get_name()

    @pytest.mark.asyncio
    async def test_async_delegate_before_init_raises(self):
        """Test that async delegates also require init."""
        with pytest.raises(NotInitialisedError):
            await cache.get("key")

    def test_init_is_idempotent(self, factory, metrics):
        """Test that a second init returns the first instance."""
        first = cache.init(
            name="test-cache",
            backend_options={"host": "localhost"},
            client_factory=factory,
            metrics=metrics
        )
        second = cache.init(
            name="other",
            backend_options={"host": "elsewhere"},
            client_factory=factory,
            metrics=metrics
        )

        assert second is first
        assert cache.get_name() == "test-cache"
        assert cache.get_backend_options().host == "localhost"
        assert cache.get_store() is first.store

    def test_init_generates_name(self, factory, metrics):
        """Test the default cache name."""
        cache.init(backend_options={"host": "localhost"}, client_factory=factory, metrics=metrics)

        assert cache.get_name().startswith("redisCache-")

    def test_init_rejects_invalid_default_ttl(self, factory, metrics):
        """Test default TTL validation at init."""
        with pytest.raises(InvalidTtlError):
            cache.init(
                backend_options={"host": "localhost"},
                default_ttl_in_seconds=-10,
                client_factory=factory,
                metrics=metrics
            )

        with pytest.raises(NotInitialisedError):
            cache.get_cache()

    def test_init_from_settings(self, factory, metrics):
        """Test configuration taken from CacheSettings."""
        settings = CacheSettings(
            redis_url="redis://cache.internal:6380/2",
            pool_name="pricing-cache",
            pool_max=3,
            acquire_timeout_millis=250,
            default_ttl_in_seconds=30
        )

        cache.init(settings=settings, client_factory=factory, metrics=metrics)

        assert cache.get_name() == "pricing-cache"
        assert cache.get_backend_options().url == "redis://cache.internal:6380/2"
        assert cache.get_pool_options().max_size == 3
        assert cache.get_pool_options().acquire_timeout_millis == 250
        assert cache.get_default_ttl_in_s() == 30

    def test_init_from_environment(self, factory, metrics, monkeypatch):
        """Test that init without options reads KVCACHE_* variables."""
        monkeypatch.setenv("KVCACHE_REDIS_URL", "redis://env-host:6379/1")
        monkeypatch.setenv("KVCACHE_POOL_MIN", "1")
        monkeypatch.setenv("KVCACHE_POOL_MAX", "4")

        cache.init(client_factory=factory, metrics=metrics)

        assert cache.get_backend_options().url == "redis://env-host:6379/1"
        assert cache.get_pool_options().min_size == 1
        assert cache.get_pool_options().max_size == 4
        assert cache.get_default_ttl_in_s() is None

    @pytest.mark.asyncio
    async def test_module_delegates(self, factory, server, metrics):
        """Test the module-level operations against the fake backend."""
        cache.init(
            name="test-cache",
            backend_options={"host": "localhost"},
            pool_options={"create_retry_delay": 0},
            client_factory=factory,
            metrics=metrics
        )

        assert await cache.set("user:1", {"name": "john.doe"}) == "OK"
        assert await cache.get("user:1") == {"name": "john.doe"}
        assert await cache.getset("user:1", {"name": "jane.smith"}) == {"name": "john.doe"}
        assert await cache.keys("user:*") == ["user:1"]

        assert cache.set_default_ttl_in_s(60) == 60
        assert await cache.wrap("user:2", lambda: "computed") == "computed"
        assert 0 < server.ttl("user:2") <= 60
        assert cache.unset_default_ttl_in_s() is True
        assert cache.get_default_ttl_in_s() is None

        assert await cache.delete(["user:2"]) == 1
        assert await cache.delete_all("user:*") == 1
        assert await cache.keys() == []

        status = cache.get_status()
        assert status["name"] == "test-cache"
        assert status["pending"] == 0
        assert cache.get_pool_options().max_size == 10

    @pytest.mark.asyncio
    async def test_reset_closes_and_forgets(self, factory, metrics):
        """Test that reset drains the store and clears the singleton."""
        cache.init(
            backend_options={"host": "localhost"},
            pool_options={"create_retry_delay": 0},
            client_factory=factory,
            metrics=metrics
        )
        await cache.set("key", "value")

        await cache.reset()

        assert all(client.closed for client in factory.clients)
        with pytest.raises(NotInitialisedError):
            cache.get_cache()

        # a fresh init is allowed afterwards
        assert cache.init(backend_options={"host": "localhost"}, client_factory=factory, metrics=metrics)

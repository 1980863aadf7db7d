"""
Cache-aside facade over a ``RedisStore``.

``RedisCache`` is the explicit context object. Processes that want one
shared cache use the module-level functions instead: ``init`` builds the
singleton once (later calls return it unchanged) and every other function
delegates to it, raising ``NotInitialisedError`` until ``init`` has run.
"""

import inspect
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from kvcache.config import BackendOptions, CacheSettings, PoolOptions, get_settings
from kvcache.errors import NotInitialisedError
from kvcache.logging import configure_logging, create_logger
from kvcache.metrics import MetricsCollector, get_metrics_collector
from kvcache.pool import ClientFactory, random_name
from kvcache.store import RedisStore
from kvcache.ttl import validated_ttl

Producer = Callable[[], Union[Any, Awaitable[Any]]]


async def _produce(producer: Producer) -> Any:
    result = producer()
    if inspect.isawaitable(result):
        result = await result
    return result


class RedisCache:
    """Cache-aside operations bound to one store."""

    def __init__(
        self,
        store: RedisStore,
        name: Optional[str] = None,
        logger: Any = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.name = name or store.get_name()
        self.logger = create_logger(logger, "kvcache.cache")
        self.metrics = metrics or store.metrics

    async def __aenter__(self) -> "RedisCache":
        await self.store.pool.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.store.close()

    async def wrap(self, key: str, producer: Producer, ttl_in_seconds: Any = None) -> Any:
        """Return the cached value for ``key``, computing and storing it on a miss.

        Without an explicit TTL or a store default the cache is bypassed and
        ``producer`` runs every time. Falsy cached values count as misses and
        a ``None`` result is never stored.
        """
        ttl = validated_ttl(ttl_in_seconds, self.store.get_default_ttl_in_s())
        if ttl is None:
            self.logger.debug("cache bypass, no ttl", cache=self.name, key=key)
            self.metrics.record_cache_access(self.name, "bypass")
            return await _produce(producer)

        cached = await self.store.get(key)
        if cached:
            self.logger.debug("cache hit", cache=self.name, key=key)
            self.metrics.record_cache_access(self.name, "hit")
            return cached

        self.logger.debug("cache miss", cache=self.name, key=key)
        self.metrics.record_cache_access(self.name, "miss")

        value = await _produce(producer)
        if value is not None:
            await self.store.set(key, value, ttl)
        return value

    async def get(self, key: str, raw: bool = False) -> Any:
        return await self.store.get(key, raw=raw)

    async def set(self, key: str, value: Any, ttl_in_seconds: Any = None) -> str:
        return await self.store.set(key, value, ttl_in_seconds)

    async def getset(self, key: str, value: Any, ttl_in_seconds: Any = None) -> Any:
        return await self.store.getset(key, value, ttl_in_seconds)

    async def keys(self, pattern: str = "*") -> List[str]:
        return await self.store.keys(pattern)

    async def delete(self, keys: Union[str, Sequence[str]] = ()) -> int:
        return await self.store.delete(keys)

    async def delete_all(self, pattern: str = "*") -> int:
        return await self.store.delete_all(pattern)

    def get_name(self) -> str:
        return self.store.get_name()

    def get_backend_options(self) -> BackendOptions:
        return self.store.get_backend_options()

    def get_pool_options(self) -> PoolOptions:
        return self.store.get_pool_options()

    def get_status(self) -> Dict[str, Any]:
        return self.store.status()

    def get_default_ttl_in_s(self) -> Optional[int]:
        return self.store.get_default_ttl_in_s()

    def set_default_ttl_in_s(self, ttl: Any) -> Optional[int]:
        return self.store.set_default_ttl_in_s(ttl)

    def unset_default_ttl_in_s(self) -> bool:
        return self.store.unset_default_ttl_in_s()


# Module-level singleton

_cache: Optional[RedisCache] = None
_init_lock = threading.Lock()


def init(
    name: Optional[str] = None,
    backend_options: Any = None,
    pool_options: Any = None,
    logger: Any = None,
    default_ttl_in_seconds: Any = None,
    settings: Optional[CacheSettings] = None,
    client_factory: Optional[ClientFactory] = None,
    metrics: Optional[MetricsCollector] = None,
) -> RedisCache:
    """Create the process-wide cache, or return the one already created.

    Options not passed explicitly come from ``settings``; when neither
    backend options nor settings are given, settings are read from the
    ``KVCACHE_*`` environment.
    """
    global _cache

    with _init_lock:
        if _cache is not None:
            _cache.logger.debug("RedisCache already initialised", cache=_cache.name)
            return _cache

        scan_batch_size = 1000
        if settings is None and backend_options is None:
            settings = get_settings()

        if settings is not None:
            if settings.configure_logging:
                configure_logging("kvcache", settings.log_level)
            name = name or settings.pool_name
            backend_options = backend_options or settings.backend_options()
            pool_options = pool_options or settings.pool_options()
            if default_ttl_in_seconds is None:
                default_ttl_in_seconds = settings.default_ttl_in_seconds
            scan_batch_size = settings.scan_batch_size

        name = name or random_name("redisCache")
        metrics = metrics or get_metrics_collector()
        store = RedisStore(
            name=name,
            backend_options=backend_options,
            pool_options=pool_options,
            logger=logger,
            default_ttl_in_seconds=default_ttl_in_seconds,
            client_factory=client_factory,
            metrics=metrics,
            scan_batch_size=scan_batch_size,
        )
        _cache = RedisCache(store, name=name, logger=logger, metrics=metrics)
        _cache.logger.info("RedisCache initialised", cache=name)
        return _cache


def get_cache() -> RedisCache:
    if _cache is None:
        raise NotInitialisedError()
    return _cache


def get_store() -> RedisStore:
    return get_cache().store


async def reset() -> None:
    """Close the singleton's store and forget it."""
    global _cache

    with _init_lock:
        cache, _cache = _cache, None

    if cache is not None:
        await cache.close()


async def get(key: str, raw: bool = False) -> Any:
    return await get_cache().get(key, raw=raw)


async def set(key: str, value: Any, ttl_in_seconds: Any = None) -> str:
    return await get_cache().set(key, value, ttl_in_seconds)


async def getset(key: str, value: Any, ttl_in_seconds: Any = None) -> Any:
    return await get_cache().getset(key, value, ttl_in_seconds)


async def keys(pattern: str = "*") -> List[str]:
    return await get_cache().keys(pattern)


async def delete(keys: Union[str, Sequence[str]] = ()) -> int:
    return await get_cache().delete(keys)


async def delete_all(pattern: str = "*") -> int:
    return await get_cache().delete_all(pattern)


async def wrap(key: str, producer: Producer, ttl_in_seconds: Any = None) -> Any:
    return await get_cache().wrap(key, producer, ttl_in_seconds)


def get_name() -> str:
    return get_cache().get_name()


def get_backend_options() -> BackendOptions:
    return get_cache().get_backend_options()


def get_pool_options() -> PoolOptions:
    return get_cache().get_pool_options()


def get_status() -> Dict[str, Any]:
    return get_cache().get_status()


def get_default_ttl_in_s() -> Optional[int]:
    return get_cache().get_default_ttl_in_s()


def set_default_ttl_in_s(ttl: Any) -> Optional[int]:
    return get_cache().set_default_ttl_in_s(ttl)


def unset_default_ttl_in_s() -> bool:
    return get_cache().unset_default_ttl_in_s()

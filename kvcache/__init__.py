"""
kvcache: pooled Redis connections, a typed command store and a cache-aside
facade for asyncio services.

Modules:

- backend: Adapter over a single redis-py connection
- pool: Bounded connection pool with retried creation and priority queueing
- store: Typed commands, TTL policy and pattern deletes via a Lua script
- cache: Cache-aside ``wrap`` and the module-level cache singleton
- config: Backend/pool options and pydantic-settings environment settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Coded error types
- retry: Retry decorator for connection creation
- test_helpers: In-memory backend for tests

Layering is strictly top-down (cache -> store -> pool -> backend); lower
modules never import higher ones.
"""

from kvcache.cache import RedisCache
from kvcache.config import BackendOptions, CacheSettings, PoolOptions
from kvcache.errors import (
    AcquireTimeoutError,
    BackendConnectionError,
    CacheLayerException,
    ConnectionCreateFailedError,
    InvalidTtlError,
    NotInitialisedError,
    NotPartOfPoolError,
    PoolDrainingError,
    ScriptNotFoundError,
)
from kvcache.pool import ConnectionPool
from kvcache.store import RedisStore
from kvcache.values import Raw, Structured

__all__ = [
    "AcquireTimeoutError",
    "BackendConnectionError",
    "BackendOptions",
    "CacheLayerException",
    "CacheSettings",
    "ConnectionCreateFailedError",
    "ConnectionPool",
    "InvalidTtlError",
    "NotInitialisedError",
    "NotPartOfPoolError",
    "PoolDrainingError",
    "PoolOptions",
    "Raw",
    "RedisCache",
    "RedisStore",
    "ScriptNotFoundError",
    "Structured",
]

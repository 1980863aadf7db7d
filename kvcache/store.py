"""
Redis store: typed commands over a connection pool.

Values are encoded through ``kvcache.values``; TTLs are validated through
``kvcache.ttl``. Bulk invalidation runs server-side as a Lua script that
walks the keyspace with SCAN, so it never blocks Redis on a full KEYS.
"""

import asyncio
from typing import Any, List, Optional, Sequence, Union

from redis.exceptions import NoScriptError

from kvcache.config import BackendOptions, PoolOptions
from kvcache.errors import InvalidTtlError, ScriptNotFoundError
from kvcache.logging import create_logger
from kvcache.metrics import MetricsCollector, get_metrics_collector
from kvcache.pool import ClientFactory, ConnectionPool, random_name
from kvcache.ttl import validated_ttl
from kvcache.values import decode_value, encode_value

# Requires Redis >= 4.0 (UNLINK, effects replication).
DELETE_KEYS_SCRIPT = """
local cursor = "0"
local deleted = 0
redis.replicate_commands()
repeat
    local result = redis.call("SCAN", cursor, "MATCH", ARGV[1], "COUNT", ARGV[2])
    cursor = result[1]
    for _, key in ipairs(result[2]) do
        deleted = deleted + redis.call("UNLINK", key)
    end
until cursor == "0"
return deleted
"""


def _ok(reply: Any) -> Any:
    if reply is True or reply == b"OK":
        return "OK"
    return reply


class RedisStore:
    """Command gateway in front of a ``ConnectionPool``."""

    def __init__(
        self,
        name: Optional[str] = None,
        backend_options: Any = None,
        pool_options: Any = None,
        logger: Any = None,
        default_ttl_in_seconds: Optional[int] = None,
        pool: Optional[ConnectionPool] = None,
        client_factory: Optional[ClientFactory] = None,
        metrics: Optional[MetricsCollector] = None,
        scan_batch_size: int = 1000,
    ):
        self.name = name or random_name("redisStore")
        self.logger = create_logger(logger, "kvcache.store")
        self.metrics = metrics or get_metrics_collector()
        self.pool = pool or ConnectionPool(
            name=self.name,
            backend_options=backend_options,
            pool_options=pool_options,
            logger=logger,
            client_factory=client_factory,
            metrics=self.metrics,
        )
        self.default_ttl_in_seconds = validated_ttl(default_ttl_in_seconds)
        self.scan_batch_size = scan_batch_size
        self._delete_script: Optional[asyncio.Future] = None

    async def __aenter__(self) -> "RedisStore":
        await self.pool.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Drain the underlying pool."""
        await self.pool.drain()

    # Pool passthroughs

    def get_name(self) -> str:
        return self.name

    def get_backend_options(self) -> BackendOptions:
        return self.pool.get_backend_options()

    def get_pool_options(self) -> PoolOptions:
        return self.pool.get_pool_options()

    def status(self):
        return self.pool.status()

    # Default TTL

    def get_default_ttl_in_s(self) -> Optional[int]:
        return self.default_ttl_in_seconds

    def set_default_ttl_in_s(self, ttl: Any) -> Optional[int]:
        self.default_ttl_in_seconds = validated_ttl(ttl)
        return self.default_ttl_in_seconds

    def unset_default_ttl_in_s(self) -> bool:
        self.default_ttl_in_seconds = None
        return True

    # Commands

    async def ping(self, message: Optional[str] = None) -> str:
        """Return ``PONG``, or echo ``message``."""
        if message:
            return await self.pool.send_command("PING", message)
        return await self.pool.send_command("PING")

    async def get(self, key: str, raw: bool = False) -> Any:
        """Value stored at ``key`` or ``None``; JSON is parsed unless ``raw``."""
        result = await self.pool.send_command("GET", key)
        if raw:
            return result
        return decode_value(result)

    async def set(self, key: str, value: Any, ttl_in_seconds: Any = None) -> str:
        """Store ``value``, expiring it when an explicit or default TTL applies."""
        payload = encode_value(value)
        ttl = validated_ttl(ttl_in_seconds, self.default_ttl_in_seconds)
        if ttl:
            return _ok(await self.pool.send_command("SETEX", key, ttl, payload))
        return _ok(await self.pool.send_command("SET", key, payload))

    async def getset(self, key: str, value: Any, ttl_in_seconds: Any = None) -> Any:
        """Swap in ``value`` and return the previous one.

        The swap itself is atomic; the TTL, when one applies, is set by a
        second EXPIRE call afterwards.
        """
        payload = encode_value(value)
        ttl = validated_ttl(ttl_in_seconds, self.default_ttl_in_seconds)

        result = decode_value(await self.pool.send_command("GETSET", key, payload))

        if ttl:
            await self.pool.send_command("EXPIRE", key, ttl)
        return result

    async def delete(self, keys: Union[str, Sequence[str]] = ()) -> int:
        """Delete ``keys`` (one key or several); returns how many existed."""
        if isinstance(keys, (str, bytes)):
            keys = [keys]
        return await self.pool.send_command("DEL", *keys)

    async def expire(self, key: str, ttl_in_seconds: Any) -> int:
        """1 if the timeout was set, 0 if ``key`` does not exist."""
        ttl = validated_ttl(ttl_in_seconds)
        if ttl is None:
            raise InvalidTtlError("expire requires ttl_in_seconds", details={"key": key})
        return int(await self.pool.send_command("EXPIRE", key, ttl))

    async def get_ttl(self, key: str) -> int:
        """Seconds left; -1 without expiry, -2 when the key is missing."""
        return await self.pool.send_command("TTL", key)

    async def keys(self, pattern: str = "*") -> List[str]:
        """All keys matching ``pattern``.

        Runs KEYS, which is O(keyspace) and blocks the server; use it for
        introspection only and ``delete_all`` for invalidation.
        """
        return await self.pool.send_command("KEYS", pattern)

    async def delete_all(self, pattern: str = "*") -> int:
        """Unlink every key matching ``pattern``; returns how many were removed."""
        self.logger.debug("clearing redis keys", store=self.name, pattern=pattern)

        try:
            deleted = await self._run_delete_script(pattern)
        except NoScriptError:
            # script cache flushed (restart, SCRIPT FLUSH): reload once
            self.logger.warning("Delete script missing on backend, reloading", store=self.name)
            self._delete_script = None
            try:
                deleted = await self._run_delete_script(pattern)
            except NoScriptError as exc:
                raise ScriptNotFoundError(
                    "Delete script unknown to backend after reload",
                    details={"store": self.name, "pattern": pattern}
                ) from exc

        deleted = int(deleted)
        self.metrics.increment_counter("keys_deleted_total", deleted, store=self.name)
        return deleted

    async def _run_delete_script(self, pattern: str) -> Any:
        sha = await self._load_delete_script()
        async with self.pool.connection() as client:
            return await client.evaluate_script(sha, [], [pattern, self.scan_batch_size])

    async def _load_delete_script(self) -> str:
        """SHA of the delete script, loading it at most once per handle."""
        load = self._delete_script
        if load is None:
            load = asyncio.ensure_future(self._script_load(DELETE_KEYS_SCRIPT))
            self._delete_script = load
        try:
            return await asyncio.shield(load)
        except Exception:
            if self._delete_script is load:
                self._delete_script = None
            raise

    async def _script_load(self, source: str) -> str:
        async with self.pool.connection() as client:
            sha = await client.load_script(source)
        self.logger.debug("Loaded delete script", store=self.name, sha=sha)
        return sha

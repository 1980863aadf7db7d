"""
Backend client adapter: one live Redis connection.

The pool only talks to backends through the ``BackendClient`` protocol, so
tests can swap in the in-memory server from ``kvcache.test_helpers``.
"""

from typing import Any, Optional, Protocol, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError

from kvcache.config import BackendOptions
from kvcache.errors import BackendConnectionError
from kvcache.logging import get_logger

logger = get_logger("kvcache.backend")


class BackendClient(Protocol):
    """What the pool and store need from a single backend connection."""

    db: int
    default_db: int

    async def execute_command(self, name: str, *args: Any) -> Any: ...

    async def select_database(self, db: int) -> None: ...

    async def load_script(self, source: str) -> str: ...

    async def evaluate_script(self, sha: str, keys: Sequence[str], args: Sequence[Any]) -> Any: ...

    async def close(self, flush: bool = True) -> None: ...


class RedisBackendClient:
    """A single redis-py connection returning raw protocol replies."""

    def __init__(self, options: BackendOptions):
        self.options = options

        common = dict(
            decode_responses=True,
            single_connection_client=True,
            socket_connect_timeout=options.socket_connect_timeout,
            socket_timeout=options.socket_timeout,
        )
        if options.url:
            self._redis = redis.Redis.from_url(options.url, **common)
        else:
            self._redis = redis.Redis(
                host=options.host,
                port=options.port,
                db=options.db,
                username=options.username,
                password=options.password,
                ssl=options.ssl,
                **common
            )
        # raw replies ("OK", "PONG", 1/0) instead of redis-py's reshaped values
        self._redis.response_callbacks.clear()

        self.default_db = int(self._redis.connection_pool.connection_kwargs.get("db", 0) or 0)
        self.db = self.default_db

    async def connect(self) -> "RedisBackendClient":
        """Open the connection and verify it answers PING."""
        try:
            reply = await self._redis.execute_command("PING")
        except (RedisError, OSError) as exc:
            await self._close_quietly()
            raise BackendConnectionError(
                f"Failed to connect to redis: {exc}",
                details={"backend": self.options.describe()}
            ) from exc

        if reply != "PONG":
            await self._close_quietly()
            raise BackendConnectionError(
                f"Expected PONG but got {reply!r}",
                details={"backend": self.options.describe()}
            )

        logger.debug("Backend connection opened", backend=self.options.describe(), db=self.db)
        return self

    async def execute_command(self, name: str, *args: Any) -> Any:
        return await self._redis.execute_command(name, *args)

    async def select_database(self, db: int) -> None:
        await self._redis.execute_command("SELECT", db)
        self.db = db
        logger.debug("DB selected", db=db)

    async def load_script(self, source: str) -> str:
        return await self._redis.script_load(source)

    async def evaluate_script(self, sha: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        return await self._redis.evalsha(sha, len(keys), *keys, *args)

    async def close(self, flush: bool = True) -> None:
        """Close the connection; ``flush`` drops it without awaiting pending replies."""
        connection: Optional[Any] = getattr(self._redis, "connection", None)
        if flush and connection is not None:
            await connection.disconnect(nowait=True)
        await self._redis.aclose()

    async def _close_quietly(self) -> None:
        try:
            await self._redis.aclose()
        except (RedisError, OSError) as exc:
            logger.debug("Ignoring close error on failed connection", error=str(exc))


async def connect_backend_client(options: BackendOptions) -> RedisBackendClient:
    """Default pool client factory."""
    return await RedisBackendClient(options).connect()

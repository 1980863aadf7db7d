"""
Connection pool for backend clients.

The pool lends each backend client to one caller at a time. Connections
are created on demand up to ``max_size`` (and eagerly up to ``min_size``),
every creation runs under a bounded retry policy, and callers that find
the pool exhausted queue by priority until a connection is released or
their acquire timeout expires.
"""

import asyncio
import enum
import time
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Set

from kvcache.backend import BackendClient, connect_backend_client
from kvcache.config import BackendOptions, PoolOptions, coerce_backend_options, coerce_pool_options
from kvcache.errors import (
    AcquireTimeoutError,
    ConnectionCreateFailedError,
    NotPartOfPoolError,
    PoolDrainingError,
)
from kvcache.logging import create_logger
from kvcache.metrics import MetricsCollector, get_metrics_collector
from kvcache.retry import RetryConfig, RetryError, retry_on_exception

ClientFactory = Callable[[BackendOptions], Awaitable[BackendClient]]


def random_name(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class ConnectionState(enum.Enum):
    """Lifecycle states of a pooled connection."""
    AVAILABLE = "available"
    IN_USE = "in_use"
    RESETTING = "resetting"
    DESTROYING = "destroying"


@dataclass
class PooledConnection:
    """Pool bookkeeping for one backend client."""
    client: Any
    state: ConnectionState = ConnectionState.AVAILABLE
    created_at: float = field(default_factory=time.time)
    last_used_at: Optional[float] = None


class ConnectionPool:
    """Bounded asyncio pool of backend clients."""

    def __init__(
        self,
        name: Optional[str] = None,
        backend_options: Any = None,
        pool_options: Any = None,
        logger: Any = None,
        client_factory: Optional[ClientFactory] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.name = name or random_name("redisPool")
        self.backend_options = coerce_backend_options(backend_options)
        self.pool_options = coerce_pool_options(pool_options)
        self.logger = create_logger(logger, "kvcache.pool")
        self.metrics = metrics or get_metrics_collector()

        retry_config = RetryConfig(
            max_attempts=self.pool_options.create_max_attempts,
            base_delay=self.pool_options.create_retry_delay,
        )
        self._create_client = retry_on_exception(
            (Exception,), retry_config, name=f"{self.name}.create"
        )(client_factory or connect_backend_client)

        self._idle: Deque[PooledConnection] = deque()
        self._in_use: Dict[int, PooledConnection] = {}
        self._waiters: List[Deque[asyncio.Future]] = [
            deque() for _ in range(self.pool_options.priority_range)
        ]
        self._creating = 0
        self._create_tasks: Set[asyncio.Task] = set()
        self._draining = False
        self._closed = False
        self._state_changed = asyncio.Event()

        self.logger.debug(
            "Creating pool",
            pool=self.name,
            min_size=self.pool_options.min_size,
            max_size=self.pool_options.max_size
        )

        # built inside a running loop: start filling to min_size right away
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            self._ensure_minimum()

    async def __aenter__(self) -> "ConnectionPool":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.drain()

    # Accessors

    def get_name(self) -> str:
        return self.name

    def get_backend_options(self) -> BackendOptions:
        return self.backend_options

    def get_pool_options(self) -> PoolOptions:
        return self.pool_options

    def get_pool_size(self) -> int:
        """Idle, lent and in-flight connections."""
        return len(self._idle) + len(self._in_use) + self._creating

    def available_count(self) -> int:
        return len(self._idle)

    def pending_count(self) -> int:
        """Acquire calls still waiting for a connection."""
        return sum(1 for queue in self._waiters for waiter in queue if not waiter.done())

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.get_pool_size(),
            "available": self.available_count(),
            "pending": self.pending_count()
        }

    # Lifecycle

    async def start(self) -> None:
        """Create ``min_size`` connections and wait for them."""
        self._ensure_minimum()
        if self._create_tasks:
            await asyncio.gather(*list(self._create_tasks), return_exceptions=True)

    async def acquire(self, priority: Optional[int] = None, db: Optional[int] = None) -> Any:
        """Borrow a connection, optionally switched to logical database ``db``."""
        if self._draining:
            raise PoolDrainingError(details={"pool": self.name})

        self._ensure_minimum()

        waiter = asyncio.get_running_loop().create_future()
        self._waiters[self._priority_slot(priority)].append(waiter)
        self._dispense()

        timeout = self.pool_options.acquire_timeout
        try:
            if timeout is None:
                client = await asyncio.shield(waiter)
            else:
                client = await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except asyncio.TimeoutError:
            self._abandon(waiter)
            self.metrics.increment_counter("acquire_timeouts_total", pool=self.name)
            self.logger.warning(
                "Timed out waiting for a connection",
                pool=self.name,
                acquire_timeout_millis=self.pool_options.acquire_timeout_millis
            )
            raise AcquireTimeoutError(details={"pool": self.name}) from None
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise
        except ConnectionCreateFailedError as exc:
            self.logger.error("Couldn't acquire connection", **exc.to_dict())
            raise

        if db is not None and client.db != db:
            try:
                await client.select_database(db)
            except Exception:
                await self.release(client)
                raise
            self.logger.info("select DB", pool=self.name, db=db)

        return client

    async def release(self, client: Any) -> None:
        """Return a borrowed connection to the idle set.

        A connection switched to another database stays counted as lent
        until it is back on its default database.
        """
        pooled = self._in_use.get(id(client))
        if pooled is None or pooled.state is not ConnectionState.IN_USE:
            raise NotPartOfPoolError(details={"pool": self.name})

        if client.db != client.default_db:
            pooled.state = ConnectionState.RESETTING
            try:
                await client.select_database(client.default_db)
            except Exception as exc:
                self._in_use.pop(id(client), None)
                self.logger.warning(
                    "Failed to reset connection database, destroying it",
                    pool=self.name,
                    db=client.db,
                    error=str(exc)
                )
                await self._teardown(pooled)
                self._ensure_minimum()
                self._dispense()
                self._notify()
                return

        self._in_use.pop(id(client), None)
        if self._closed:
            await self._teardown(pooled)
            self._notify()
            return

        pooled.state = ConnectionState.AVAILABLE
        self._idle.append(pooled)
        self._dispense()
        self._notify()

    async def destroy(self, client: Any) -> None:
        """Remove a borrowed connection from the pool and close it."""
        pooled = self._in_use.get(id(client))
        if pooled is None or pooled.state is not ConnectionState.IN_USE:
            raise NotPartOfPoolError(details={"pool": self.name})

        del self._in_use[id(client)]
        await self._teardown(pooled)
        self._ensure_minimum()
        self._dispense()
        self._notify()

    async def drain(self) -> None:
        """Stop lending, wait for every lent connection, then close them all."""
        self._draining = True
        self.logger.info("Draining pool", **self.status())

        while self.pending_count() or self._in_use:
            self._state_changed.clear()
            await self._state_changed.wait()

        self._closed = True
        if self._create_tasks:
            await asyncio.gather(*list(self._create_tasks), return_exceptions=True)

        while self._idle:
            await self._teardown(self._idle.popleft())
        self._notify()

    @asynccontextmanager
    async def connection(self, priority: Optional[int] = None, db: Optional[int] = None) -> AsyncIterator[Any]:
        """Borrow a connection for the duration of a block."""
        client = await self.acquire(priority, db)
        try:
            yield client
        finally:
            await self.release(client)

    async def send_command(self, command_name: str, *args: Any) -> Any:
        """Run one command on a borrowed connection.

        The connection goes back to the pool whether or not the command
        succeeds.
        """
        self.logger.debug("Executing send_command", pool=self.name, command=command_name)

        client = await self.acquire(self.pool_options.priority_range)
        try:
            with self.metrics.time_command(self.name, command_name.upper()):
                return await client.execute_command(command_name, *args)
        except Exception as exc:
            self.logger.error(
                "Errored send_command",
                pool=self.name,
                command=command_name,
                error=str(exc)
            )
            raise
        finally:
            await self.release(client)

    # Internals

    def _priority_slot(self, priority: Optional[int]) -> int:
        if priority is None:
            return 0
        slot = int(priority)
        if slot < 0 or slot >= self.pool_options.priority_range:
            return self.pool_options.priority_range - 1
        return slot

    def _next_waiter(self) -> Optional[asyncio.Future]:
        for queue in self._waiters:
            while queue:
                waiter = queue.popleft()
                if not waiter.done():
                    return waiter
        return None

    def _lend(self, pooled: PooledConnection) -> None:
        pooled.state = ConnectionState.IN_USE
        pooled.last_used_at = time.time()
        self._in_use[id(pooled.client)] = pooled

    def _dispense(self) -> None:
        """Start creations the queue needs, then hand idle connections out."""
        shortfall = self.pending_count() - len(self._idle) - self._creating
        capacity = self.pool_options.max_size - self.get_pool_size()
        for _ in range(max(0, min(shortfall, capacity))):
            self._spawn_create()

        while self._idle:
            waiter = self._next_waiter()
            if waiter is None:
                break
            pooled = self._idle.popleft()
            self._lend(pooled)
            waiter.set_result(pooled.client)

        self._notify()

    def _ensure_minimum(self) -> None:
        if self._draining:
            return
        for _ in range(self.pool_options.min_size - self.get_pool_size()):
            self._spawn_create()

    def _spawn_create(self) -> None:
        self._creating += 1
        task = asyncio.get_running_loop().create_task(self._create_connection())
        self._create_tasks.add(task)
        task.add_done_callback(self._create_tasks.discard)

    async def _create_connection(self) -> None:
        try:
            client = await self._create_client(self.backend_options)
        except RetryError as exc:
            self._creating -= 1
            self._creation_failed(exc)
            return
        except asyncio.CancelledError:
            self._creating -= 1
            raise

        self._creating -= 1
        pooled = PooledConnection(client=client)
        self.metrics.increment_counter("connections_created_total", pool=self.name)

        if self._closed:
            await self._teardown(pooled)
            return

        self._idle.append(pooled)
        self.logger.debug("Connection created", pool=self.name, **self.status())
        self._dispense()

    def _creation_failed(self, exc: RetryError) -> None:
        error = ConnectionCreateFailedError(
            f"Failed redis createClient, {self.backend_options.describe()}",
            details={
                "pool": self.name,
                "attempts": exc.attempts,
                "cause": str(exc.last_exception)
            }
        )
        error.__cause__ = exc.last_exception

        self.metrics.increment_counter("connection_create_failures_total", pool=self.name)
        self.logger.error("Errored while connecting Redis", **error.to_dict())

        # only fail a waiter that nothing else can serve
        if self.pending_count() > len(self._idle) + self._creating:
            waiter = self._next_waiter()
            if waiter is not None:
                waiter.set_exception(error)
        self._dispense()

    def _abandon(self, waiter: asyncio.Future) -> None:
        """Forget a waiter whose acquire gave up; reclaim it if it was served."""
        for queue in self._waiters:
            try:
                queue.remove(waiter)
            except ValueError:
                continue

        if not waiter.done():
            waiter.cancel()
        elif not waiter.cancelled() and waiter.exception() is None:
            pooled = self._in_use.pop(id(waiter.result()), None)
            if pooled is not None:
                pooled.state = ConnectionState.AVAILABLE
                self._idle.append(pooled)
                self._dispense()
        self._notify()

    async def _teardown(self, pooled: PooledConnection) -> None:
        """Close a connection; failures are logged and counted, never raised."""
        pooled.state = ConnectionState.DESTROYING
        try:
            await pooled.client.close(flush=True)
        except Exception as exc:
            self.metrics.increment_counter("connection_destroy_errors_total", pool=self.name)
            self.logger.error("Failed to destroy connection", pool=self.name, error=str(exc))
            return

        self.logger.log(
            "Client conn closed",
            pool=self.name,
            available=self.available_count(),
            size=self.get_pool_size()
        )

    def _notify(self) -> None:
        self.metrics.record_pool_status(self.status())
        self._state_changed.set()

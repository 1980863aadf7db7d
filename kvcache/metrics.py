"""
Prometheus metrics for kvcache pools, stores and caches.
"""

import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram


class MetricsCollector:
    """Holds the kvcache metric families for one registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Register the pool, command and cache metric families."""

        # Connection lifecycle
        self._metrics["connections_created_total"] = Counter(
            "kvcache_connections_created_total",
            "Backend connections created",
            ["pool"],
            registry=self.registry
        )

        self._metrics["connection_create_failures_total"] = Counter(
            "kvcache_connection_create_failures_total",
            "Backend connection creations that exhausted their retry budget",
            ["pool"],
            registry=self.registry
        )

        self._metrics["connection_destroy_errors_total"] = Counter(
            "kvcache_connection_destroy_errors_total",
            "Errors raised while tearing down backend connections",
            ["pool"],
            registry=self.registry
        )

        self._metrics["acquire_timeouts_total"] = Counter(
            "kvcache_acquire_timeouts_total",
            "Acquire calls that timed out waiting for a connection",
            ["pool"],
            registry=self.registry
        )

        self._metrics["pool_connections"] = Gauge(
            "kvcache_pool_connections",
            "Pool connection counts by state",
            ["pool", "state"],
            registry=self.registry
        )

        # Commands
        self._metrics["commands_total"] = Counter(
            "kvcache_commands_total",
            "Commands sent through a pool",
            ["pool", "command", "status"],
            registry=self.registry
        )

        self._metrics["command_duration_seconds"] = Histogram(
            "kvcache_command_duration_seconds",
            "Command round trip duration in seconds",
            ["pool", "command"],
            registry=self.registry
        )

        # Cache
        self._metrics["cache_requests_total"] = Counter(
            "kvcache_cache_requests_total",
            "Cache-aside lookups by result",
            ["cache", "result"],
            registry=self.registry
        )

        self._metrics["keys_deleted_total"] = Counter(
            "kvcache_keys_deleted_total",
            "Keys removed by pattern deletes",
            ["store"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc(amount)

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)

    @contextmanager
    def time_command(self, pool: str, command: str):
        """Count and time one command, labelling the outcome."""
        start_time = time.perf_counter()
        status = "error"
        try:
            yield
            status = "ok"
        finally:
            self.observe_histogram(
                "command_duration_seconds",
                time.perf_counter() - start_time,
                pool=pool,
                command=command
            )
            self.increment_counter("commands_total", pool=pool, command=command, status=status)

    def record_pool_status(self, status: Dict[str, Any]):
        """Publish a pool ``status()`` snapshot as gauges."""
        for state in ("size", "available", "pending"):
            self.set_gauge("pool_connections", status[state], pool=status["name"], state=state)

    def record_cache_access(self, cache: str, result: str):
        """Record a cache-aside hit, miss or bypass."""
        self.increment_counter("cache_requests_total", cache=cache, result=result)


_default_collector: Optional[MetricsCollector] = None
_default_lock = threading.Lock()


def get_metrics_collector(registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get the process-wide collector, or a fresh one bound to ``registry``."""
    global _default_collector
    if registry is not None:
        return MetricsCollector(registry)

    with _default_lock:
        if _default_collector is None:
            _default_collector = MetricsCollector()
        return _default_collector

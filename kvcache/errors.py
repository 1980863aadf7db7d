"""
Error types for the kvcache pool, store and cache layers.
"""

from typing import Dict, Any, Optional


class CacheLayerException(Exception):
    """Base exception for kvcache components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into fields suitable for a structured log event."""
        return {
            "error_code": self.code,
            "error": self.message,
            **self.details
        }


class ConnectionCreateFailedError(CacheLayerException):
    """A backend connection could not be created within the retry budget."""

    def __init__(self, message: str = "Failed redis createClient", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONNECTION_CREATE_FAILED", message, details)


class AcquireTimeoutError(CacheLayerException):
    """No connection became available before the acquire timeout."""

    def __init__(self, message: str = "ResourceRequest timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__("ACQUIRE_TIMEOUT", message, details)


class NotPartOfPoolError(CacheLayerException):
    """A connection handed back to the pool was never lent by it."""

    def __init__(self, message: str = "Resource not currently part of this pool", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_PART_OF_POOL", message, details)


class PoolDrainingError(CacheLayerException):
    """The pool is draining and no longer lends connections."""

    def __init__(self, message: str = "pool is draining and cannot accept work", details: Optional[Dict[str, Any]] = None):
        super().__init__("POOL_DRAINING", message, details)


class InvalidTtlError(CacheLayerException):
    """An explicit TTL was not a positive integer."""

    def __init__(self, message: str = "ttl_in_seconds should be a positive integer", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_TTL", message, details)


class NotInitialisedError(CacheLayerException):
    """The module-level cache was used before init()."""

    def __init__(self, message: str = "RedisCache not initialised", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_INITIALISED", message, details)


class ScriptNotFoundError(CacheLayerException):
    """The backend kept reporting a server-side script as unknown."""

    def __init__(self, message: str = "Script not found on backend", details: Optional[Dict[str, Any]] = None):
        super().__init__("SCRIPT_NOT_FOUND", message, details)


class BackendConnectionError(CacheLayerException):
    """Opening or verifying a single backend connection failed."""

    def __init__(self, message: str = "Backend connection failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("BACKEND_CONNECTION_ERROR", message, details)

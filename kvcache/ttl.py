"""
TTL validation shared by the store and the cache facade.
"""

from typing import Any, Optional

from kvcache.errors import InvalidTtlError


def validated_ttl(ttl_in_seconds: Any, default_ttl_in_seconds: Optional[int] = None) -> Optional[int]:
    """Return the effective TTL in whole seconds.

    ``None`` falls back to ``default_ttl_in_seconds`` (which may itself be
    ``None``). Anything else must parse as an integer greater than zero:
    ints, integral strings such as ``"30"`` and floats (truncated) are
    accepted; booleans, zero, negatives and non-numeric input raise
    ``InvalidTtlError``.
    """
    if ttl_in_seconds is None:
        return default_ttl_in_seconds

    if isinstance(ttl_in_seconds, bool):
        raise InvalidTtlError(details={"ttl_in_seconds": ttl_in_seconds})

    try:
        ttl = int(ttl_in_seconds)
    except (TypeError, ValueError, OverflowError):
        raise InvalidTtlError(details={"ttl_in_seconds": repr(ttl_in_seconds)}) from None

    if ttl <= 0:
        raise InvalidTtlError(details={"ttl_in_seconds": ttl_in_seconds})
    return ttl

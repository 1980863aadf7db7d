"""
Bounded retry policy.

The pool wraps its connection factory with ``retry_on_exception`` so a
transient connect failure costs a short backoff instead of a failed
acquire. The policy itself is immutable; attempt counting lives in each
call.
"""

import asyncio
import functools
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from kvcache.logging import get_logger

BACKOFF_STRATEGIES = ("exponential", "linear", "fixed")


class RetryConfig:
    """How many attempts to make and how long to wait between them."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.1,
                 max_delay: float = 5.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if backoff_strategy not in BACKOFF_STRATEGIES:
            raise ValueError(f"unknown backoff_strategy {backoff_strategy!r}")

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        if self.backoff_strategy == "exponential":
            delay = self.base_delay * self.exponential_base ** (attempt - 1)
        elif self.backoff_strategy == "linear":
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)
        if self.jitter:
            spread = delay * 0.1
            delay += random.uniform(-spread, spread)
        return max(0.0, delay)


class RetryError(Exception):
    """Every attempt failed; ``last_exception`` is the final cause."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def retry_on_exception(exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                       config: Optional[RetryConfig] = None,
                       name: Optional[str] = None) -> Callable:
    """Retry an async callable on ``exceptions`` under ``config``.

    Other exceptions propagate on the first occurrence. Once the attempts
    are spent a ``RetryError`` is raised, chained to the last failure.
    """
    policy = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        operation = name or getattr(func, "__name__", "operation")
        logger = get_logger(f"kvcache.retry.{operation}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await func(*args, **kwargs)
                except exceptions as exc:
                    if attempt >= policy.max_attempts:
                        logger.error(
                            "Giving up after final attempt",
                            operation=operation,
                            attempts=attempt,
                            error=str(exc)
                        )
                        raise RetryError(
                            f"{operation} failed after {attempt} attempts",
                            last_exception=exc,
                            attempts=attempt
                        ) from exc

                    delay = policy.delay_for(attempt)
                    logger.warning(
                        "Attempt failed, backing off",
                        operation=operation,
                        attempt=attempt,
                        max_attempts=policy.max_attempts,
                        delay=round(delay, 3),
                        error=str(exc)
                    )
                    await asyncio.sleep(delay)
                    continue

                if attempt > 1:
                    logger.info("Recovered after retry", operation=operation, attempt=attempt)
                return result

        return wrapper

    return decorator

"""
Configuration for kvcache pools, stores and the cache facade.

``BackendOptions`` and ``PoolOptions`` are immutable once built.
``CacheSettings`` reads the same knobs from ``KVCACHE_*`` environment
variables (or a ``.env`` file).
"""

from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendOptions(BaseModel):
    """Connection parameters for one Redis link."""

    model_config = ConfigDict(frozen=True)

    url: Optional[str] = None
    host: str = "127.0.0.1"
    port: int = 6379
    db: int = Field(default=0, ge=0)
    username: Optional[str] = None
    password: Optional[str] = None
    ssl: bool = False
    socket_connect_timeout: float = 5.0
    socket_timeout: float = 5.0

    def describe(self) -> Dict[str, Any]:
        """Options safe to put in logs and error messages."""
        described = self.model_dump(exclude_none=True, exclude_defaults=True)
        if "password" in described:
            described["password"] = "***"
        return described


class PoolOptions(BaseModel):
    """Sizing and creation policy for a connection pool."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    min_size: int = Field(default=0, ge=0, validation_alias=AliasChoices("min_size", "min"))
    max_size: int = Field(default=10, ge=1, validation_alias=AliasChoices("max_size", "max"))
    acquire_timeout_millis: Optional[int] = Field(default=None, gt=0)
    priority_range: int = Field(default=1, ge=1)
    create_max_attempts: int = Field(default=3, ge=1)
    create_retry_delay: float = Field(default=0.1, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "PoolOptions":
        if self.min_size > self.max_size:
            raise ValueError("min_size must not exceed max_size")
        return self

    @property
    def acquire_timeout(self) -> Optional[float]:
        if self.acquire_timeout_millis is None:
            return None
        return self.acquire_timeout_millis / 1000.0


class CacheSettings(BaseSettings):
    """Environment-driven settings for the module-level cache."""

    model_config = SettingsConfigDict(
        env_prefix="KVCACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    env: str = "local"
    log_level: str = "info"
    configure_logging: bool = False

    redis_url: str = "redis://localhost:6379/0"

    pool_name: Optional[str] = None
    pool_min: int = 0
    pool_max: int = 10
    acquire_timeout_millis: Optional[int] = None
    priority_range: int = 1
    create_max_attempts: int = 3
    create_retry_delay: float = 0.1

    default_ttl_in_seconds: Optional[int] = None
    scan_batch_size: int = Field(default=1000, ge=1)

    def backend_options(self) -> BackendOptions:
        return BackendOptions(url=self.redis_url)

    def pool_options(self) -> PoolOptions:
        return PoolOptions(
            min_size=self.pool_min,
            max_size=self.pool_max,
            acquire_timeout_millis=self.acquire_timeout_millis,
            priority_range=self.priority_range,
            create_max_attempts=self.create_max_attempts,
            create_retry_delay=self.create_retry_delay,
        )


def coerce_backend_options(options: Any) -> BackendOptions:
    if options is None:
        return BackendOptions()
    if isinstance(options, BackendOptions):
        return options
    return BackendOptions.model_validate(options)


def coerce_pool_options(options: Any) -> PoolOptions:
    if options is None:
        return PoolOptions()
    if isinstance(options, PoolOptions):
        return options
    return PoolOptions.model_validate(options)


def get_settings() -> CacheSettings:
    """Load settings from the environment."""
    return CacheSettings()

"""
Centralized settings for the gateway.

Manifesto:
    Capacities, TTLs, thresholds and backoff constants are deployment
    decisions, not code. One validated settings object carries all of them,
    is read from ``BULWARK_*`` environment variables or a ``.env`` file, and
    fails loudly at startup when a value makes no sense.

    - **Pydantic validation:** Type-checked and range-checked at startup
    - **Environment-driven:** ``BULWARK_CACHE__TTL_SECONDS=30``
    - **Fatal on error:** :func:`load_settings` raises ``ContractViolation``

Examples:
    >>> from bulwark.core.settings import load_settings
    >>> settings = load_settings(limiter={"capacity": 5, "refill_rate_per_second": 5})
    >>> settings.limiter.capacity
    5

Tags:
    settings, configuration, pydantic, environment, bulwark

Doc-Types:
    api-reference
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ContractViolation


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class StoreBackend(str, Enum):
    """Backing store for cache entries and idempotency records."""

    MEMORY = "memory"
    REDIS = "redis"


class LimiterConfig(BaseModel):
    """Token bucket limits (per key, plus optional global bucket)."""

    capacity: int = Field(default=10, gt=0)
    refill_rate_per_second: float = Field(default=5.0, gt=0)
    global_capacity: int | None = Field(default=None, gt=0)
    global_refill_rate_per_second: float | None = Field(default=None, gt=0)
    max_keys: int = Field(default=10_000, gt=0)

    @model_validator(mode="after")
    def _global_bucket_complete(self) -> LimiterConfig:
        if (self.global_capacity is None) != (self.global_refill_rate_per_second is None):
            raise ValueError(
                "global_capacity and global_refill_rate_per_second must be set together"
            )
        return self


class BreakerConfig(BaseModel):
    """Circuit breaker thresholds."""

    failure_threshold: float = Field(default=0.5, gt=0, le=1)
    minimum_calls: int = Field(default=10, gt=0)
    window_seconds: float = Field(default=30.0, gt=0)
    reset_timeout_seconds: float = Field(default=30.0, gt=0)
    call_timeout_seconds: float = Field(default=5.0, gt=0)
    success_streak_reset: int = Field(default=20, gt=0)


class CacheConfig(BaseModel):
    """Read-through cache freshness windows."""

    ttl_seconds: float = Field(default=60.0, gt=0)
    stale_grace_seconds: float = Field(default=30.0, ge=0)
    stale_if_error_seconds: float = Field(default=300.0, ge=0)
    idle_grace_seconds: float = Field(default=60.0, ge=0)
    max_entries: int = Field(default=10_000, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)


class RetryConfig(BaseModel):
    """Exponential backoff for idempotent operations."""

    max_attempts: int = Field(default=3, gt=0)
    backoff_base_ms: int = Field(default=100, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_backoff_ms: int = Field(default=10_000, ge=0)
    jitter: float = Field(default=0.25, ge=0, le=1)

    @model_validator(mode="after")
    def _backoff_cap(self) -> RetryConfig:
        if self.max_backoff_ms < self.backoff_base_ms:
            raise ValueError("max_backoff_ms must be >= backoff_base_ms")
        return self


class IdempotencyConfig(BaseModel):
    """Idempotency record retention and in-progress lease."""

    retention_seconds: float = Field(default=86_400.0, gt=0)
    lease_seconds: float = Field(default=300.0, gt=0)
    poll_interval_ms: int = Field(default=50, gt=0)
    wait_timeout_seconds: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def _lease_within_retention(self) -> IdempotencyConfig:
        if self.lease_seconds > self.retention_seconds:
            raise ValueError("lease_seconds must not exceed retention_seconds")
        return self


class GatewaySettings(BaseSettings):
    """Gateway configuration.

    All fields can be set via ``BULWARK_*`` environment variables; nested
    models use ``__`` (e.g. ``BULWARK_BREAKER__MINIMUM_CALLS=20``).
    """

    model_config = SettingsConfigDict(
        env_prefix="BULWARK_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ── Components ───────────────────────────────────────────────
    limiter: LimiterConfig = Field(default_factory=LimiterConfig)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)

    # ── Store ────────────────────────────────────────────────────
    store_backend: StoreBackend = Field(default=StoreBackend.MEMORY)
    redis_url: str = Field(default="redis://localhost:6379/0")
    key_prefix: str = Field(default="bulwark", min_length=1)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")
        return level


def load_settings(**overrides: Any) -> GatewaySettings:
    """Build settings from the environment plus ``overrides``.

    Raises:
        ContractViolation: If any value fails validation.
    """
    try:
        return GatewaySettings(**overrides)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ContractViolation(f"Invalid gateway configuration: {problems}", cause=exc) from exc


__all__ = [
    "StoreBackend",
    "LimiterConfig",
    "BreakerConfig",
    "CacheConfig",
    "RetryConfig",
    "IdempotencyConfig",
    "GatewaySettings",
    "load_settings",
]

"""
Bulwark - resilience primitives for calling unreliable upstreams.

Rate limiting, single-flight coalescing, circuit breaking, a stale-aware
read-through cache and an idempotent retry orchestrator, composed behind
one :class:`~bulwark.gateway.Gateway`.
"""

__version__ = "0.1.0"

from bulwark.core.errors import (  # noqa: E402
    BulwarkError,
    CircuitOpenError,
    ContractViolation,
    IdempotencyConflict,
    OperationFailed,
    RateLimitExceeded,
    RetryExhausted,
    StaleDataServed,
    TimeoutExpired,
    UpstreamError,
)
from bulwark.core.settings import GatewaySettings, load_settings  # noqa: E402
from bulwark.execution.circuit_breaker import CircuitBreaker, CircuitState  # noqa: E402
from bulwark.execution.idempotency import IdempotentExecutor  # noqa: E402
from bulwark.execution.rate_limit import RateLimiter  # noqa: E402
from bulwark.execution.read_through import CacheStatus, ReadThroughCache  # noqa: E402
from bulwark.execution.retry import RetryPolicy  # noqa: E402
from bulwark.execution.singleflight import SingleFlight  # noqa: E402
from bulwark.gateway import Gateway  # noqa: E402

__all__ = [
    "__version__",
    "BulwarkError",
    "CacheStatus",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "ContractViolation",
    "Gateway",
    "GatewaySettings",
    "IdempotencyConflict",
    "IdempotentExecutor",
    "OperationFailed",
    "RateLimitExceeded",
    "RateLimiter",
    "ReadThroughCache",
    "RetryExhausted",
    "RetryPolicy",
    "SingleFlight",
    "StaleDataServed",
    "TimeoutExpired",
    "UpstreamError",
    "load_settings",
]

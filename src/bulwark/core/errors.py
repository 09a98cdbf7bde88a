"""
Structured error types for the bulwark gateway.

Every failure path in the gateway either raises one of the typed errors
below or returns a successful-but-degraded result carrying an explicit
:class:`StaleDataServed` marker. Nothing is swallowed silently.

Manifesto:
    - **Typed hierarchy:** callers branch on the error type, never on text
    - **Explicit retry semantics:** every error knows if waiting helps
    - **Retry hints:** admission errors carry ``retry_after_ms``
    - **Error chaining:** the upstream exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                        BulwarkError                          │
        │  (category, retryable, retry_after_ms, context, cause)      │
        ├─────────────────────────────────────────────────────────────┤
        │  RateLimitExceeded   CircuitOpenError    TimeoutExpired     │
        │  (RATE_LIMIT)        (CIRCUIT)           (TIMEOUT)          │
        │                                                              │
        │  UpstreamError       ContractViolation   OperationFailed    │
        │  (UPSTREAM)          (CONFIG, fatal)     (IDEMPOTENCY)      │
        │                                                              │
        │  RetryExhausted      IdempotencyConflict                    │
        └─────────────────────────────────────────────────────────────┘

        StaleDataServed  ── soft signal on a successful CacheResult

User-visible mapping (consumed by the HTTP layer):
    RateLimitExceeded            → 429 + Retry-After
    CircuitOpenError             → 503
    TimeoutExpired               → 504
    UpstreamError / RetryExhausted / OperationFailed → 502
    ContractViolation            → process fails to start

Examples:
    >>> err = RateLimitExceeded("too many requests", retry_after_ms=200)
    >>> err.retryable, err.retry_after_ms
    (True, 200)
    >>> err.with_context(key="client-1").to_dict()["context"]
    {'key': 'client-1'}

Tags:
    error-handling, exception-hierarchy, retry-logic, bulwark
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories for classification and routing."""

    RATE_LIMIT = "RATE_LIMIT"      # Admission denied
    CIRCUIT = "CIRCUIT"            # Breaker fast-fail
    TIMEOUT = "TIMEOUT"            # Deadline exceeded
    UPSTREAM = "UPSTREAM"          # Wrapped producer/operation failed
    CONFIG = "CONFIG"              # Invalid configuration (fatal)
    IDEMPOTENCY = "IDEMPOTENCY"    # Idempotency record outcome/conflict
    INTERNAL = "INTERNAL"          # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        key: Cache/limiter key involved
        upstream: Name of the upstream (breaker identity)
        idempotency_key: Idempotency key of the operation
        attempt: Attempt number when the error was raised
        metadata: Additional key-value pairs
    """

    key: str | None = None
    upstream: str | None = None
    idempotency_key: str | None = None
    attempt: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for name in ["key", "upstream", "idempotency_key", "attempt"]:
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class BulwarkError(Exception):
    """
    Base exception for all gateway errors.

    Subclasses set ``default_category`` and ``default_retryable`` so the
    common case needs no keyword arguments.

    Examples:
        >>> err = BulwarkError("unexpected")
        >>> err.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> err.retryable
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after_ms: int | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after_ms = retry_after_ms
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> BulwarkError:
        """
        Add context to this error (fluent API).

        Usage:
            raise UpstreamError("bad payload").with_context(upstream="billing")
        """
        for name, value in kwargs.items():
            if name != "metadata" and hasattr(self.context, name):
                setattr(self.context, name, value)
            else:
                self.context.metadata[name] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after_ms is not None:
            result["retry_after_ms"] = self.retry_after_ms
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# RUNTIME ERRORS (recoverable by the caller)
# =============================================================================


class RateLimitExceeded(BulwarkError):
    """Admission denied by the token bucket limiter.

    Always recoverable by waiting ``retry_after_ms``.
    """

    default_category = ErrorCategory.RATE_LIMIT
    default_retryable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after_ms: int = 0,
        scope: str = "key",
        **kwargs: Any,
    ):
        super().__init__(message, retry_after_ms=retry_after_ms, **kwargs)
        self.scope = scope


class CircuitOpenError(BulwarkError):
    """Raised while a breaker is OPEN, or HALF_OPEN with a probe in flight."""

    default_category = ErrorCategory.CIRCUIT
    default_retryable = True

    def __init__(self, message: str = "Circuit breaker is open", **kwargs: Any):
        super().__init__(message, **kwargs)


class TimeoutExpired(BulwarkError, TimeoutError):
    """Raised when a call exceeds its allotted duration.

    Inherits from built-in TimeoutError for broad exception handling.

    Attributes:
        timeout: The timeout value that was exceeded (seconds)
        operation: Name/description of the operation
    """

    default_category = ErrorCategory.TIMEOUT
    default_retryable = True

    def __init__(self, timeout: float, operation: str = "operation", **kwargs: Any):
        self.timeout = timeout
        self.operation = operation
        super().__init__(f"Operation '{operation}' timed out after {timeout}s", **kwargs)


class UpstreamError(BulwarkError):
    """The wrapped producer or operation failed for a reason intrinsic to it.

    Whether it is retryable is decided by whoever raises it.
    """

    default_category = ErrorCategory.UPSTREAM
    default_retryable = False


class RetryExhausted(BulwarkError):
    """All retry attempts failed with retryable errors."""

    default_category = ErrorCategory.UPSTREAM
    default_retryable = False

    def __init__(self, message: str, *, attempts: int, last_error: BaseException, **kwargs: Any):
        super().__init__(message, cause=last_error, **kwargs)
        self.attempts = attempts
        self.last_error = last_error


# =============================================================================
# CONFIGURATION ERRORS (fatal)
# =============================================================================


class ContractViolation(BulwarkError):
    """Invalid configuration detected at construction. Never retried."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# IDEMPOTENCY OUTCOMES
# =============================================================================


class OperationFailed(BulwarkError):
    """Terminal FAILED outcome for an idempotency key.

    Raised to the first caller and replayed to every later caller using the
    same key until the record expires or is cleared.

    Attributes:
        idempotency_key: Key the outcome is stored under
        attempts: Number of attempts made before giving up
        reason: ``"non_retryable"`` or ``"exhausted"``
        error_type: Class name of the error that ended the operation
    """

    default_category = ErrorCategory.IDEMPOTENCY
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        idempotency_key: str,
        attempts: int,
        reason: str,
        error_type: str,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.idempotency_key = idempotency_key
        self.attempts = attempts
        self.reason = reason
        self.error_type = error_type
        self.context.idempotency_key = idempotency_key


class IdempotencyConflict(BulwarkError):
    """Raised when clearing a record that is still IN_PROGRESS."""

    default_category = ErrorCategory.IDEMPOTENCY
    default_retryable = True


# =============================================================================
# SOFT SIGNALS
# =============================================================================


@dataclass(frozen=True)
class StaleDataServed:
    """Degraded-freshness marker on an otherwise successful result.

    Attributes:
        age_seconds: Seconds since the served value was fetched
        reason: ``"stale"`` for stale-while-revalidate, otherwise the error
            type that forced the stale-if-error fallback
    """

    age_seconds: float
    reason: str = "stale"

    @property
    def degraded(self) -> bool:
        return self.reason != "stale"


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(exc: BaseException) -> bool:
    """Default retry predicate.

    Gateway errors answer for themselves; bare network and timeout errors
    are treated as transient; everything else is permanent.
    """
    if isinstance(exc, BulwarkError):
        return exc.retryable
    return isinstance(exc, (TimeoutError, ConnectionError))


def http_status_for(exc: BaseException) -> int:
    """Map an error to the HTTP status the calling service should emit."""
    if isinstance(exc, RateLimitExceeded):
        return 429
    if isinstance(exc, CircuitOpenError):
        return 503
    if isinstance(exc, TimeoutError):
        return 504
    if isinstance(exc, (UpstreamError, RetryExhausted, OperationFailed)):
        return 502
    if isinstance(exc, IdempotencyConflict):
        return 409
    return 500


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "BulwarkError",
    "RateLimitExceeded",
    "CircuitOpenError",
    "TimeoutExpired",
    "UpstreamError",
    "RetryExhausted",
    "ContractViolation",
    "OperationFailed",
    "IdempotencyConflict",
    "StaleDataServed",
    "is_retryable",
    "http_status_for",
]

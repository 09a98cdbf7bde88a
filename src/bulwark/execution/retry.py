"""Retry policy with exponential backoff and jitter.

Only errors matching the policy's ``retryable`` predicate are retried.
Attempts are capped at ``max_attempts``; running out raises
:class:`~bulwark.core.errors.RetryExhausted`, which is distinct from the
original error a non-retryable failure surfaces with.

Admission rejections (circuit open, rate limited) end the loop at once:
no upstream call happened, and hammering a closed door only burns the
attempt budget.

Example:
    >>> policy = RetryPolicy(max_attempts=5, backoff_base_ms=100, backoff_multiplier=2.0)
    >>> [round(policy.delay_for(n, jitter=False), 3) for n in range(1, 4)]
    [0.1, 0.2, 0.4]
    >>> result = await run_with_retry(lambda: charge(order), policy)
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from bulwark.core.errors import (
    CircuitOpenError,
    ContractViolation,
    RateLimitExceeded,
    RetryExhausted,
    is_retryable,
)
from bulwark.core.logging import get_logger
from bulwark.observability.metrics import MetricsRecorder

logger = get_logger(__name__)

T = TypeVar("T")

# Rejections raised before any upstream work took place.
ADMISSION_ERRORS: tuple[type[BaseException], ...] = (CircuitOpenError, RateLimitExceeded)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy.

    Delay before attempt ``n + 1`` is
    ``min(backoff_base_ms * backoff_multiplier ** (n - 1), max_backoff_ms)``
    plus or minus ``jitter`` as a fraction of that delay.

    Attributes:
        max_attempts: Total attempts including the first
        backoff_base_ms: Delay after the first failure
        backoff_multiplier: Growth factor per attempt
        max_backoff_ms: Delay cap
        jitter: Random spread as a fraction of the delay (0.0-1.0)
        retryable: Predicate deciding which errors are retried
    """

    max_attempts: int = 3
    backoff_base_ms: int = 100
    backoff_multiplier: float = 2.0
    max_backoff_ms: int = 10_000
    jitter: float = 0.25
    retryable: Callable[[BaseException], bool] = field(default=is_retryable, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ContractViolation(f"max_attempts must be positive, got {self.max_attempts}")
        if self.backoff_base_ms < 0:
            raise ContractViolation(f"backoff_base_ms must be >= 0, got {self.backoff_base_ms}")
        if self.backoff_multiplier < 1:
            raise ContractViolation(
                f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}"
            )
        if self.max_backoff_ms < self.backoff_base_ms:
            raise ContractViolation("max_backoff_ms must be >= backoff_base_ms")
        if not 0 <= self.jitter <= 1:
            raise ContractViolation(f"jitter must be in [0, 1], got {self.jitter}")

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> RetryPolicy:
        """Build from a :class:`~bulwark.core.settings.RetryConfig`."""
        return cls(
            max_attempts=config.max_attempts,
            backoff_base_ms=config.backoff_base_ms,
            backoff_multiplier=config.backoff_multiplier,
            max_backoff_ms=config.max_backoff_ms,
            jitter=config.jitter,
            **kwargs,
        )

    def delay_for(self, attempt: int, *, jitter: bool = True) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        delay_ms = min(
            self.backoff_base_ms * (self.backoff_multiplier ** (attempt - 1)),
            self.max_backoff_ms,
        )
        if jitter and self.jitter:
            spread = delay_ms * self.jitter
            delay_ms = max(0.0, delay_ms + random.uniform(-spread, spread))
        return delay_ms / 1000

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Whether another attempt follows failed attempt ``attempt``."""
        if attempt >= self.max_attempts:
            return False
        if isinstance(error, ADMISSION_ERRORS):
            return False
        return self.retryable(error)


RetryCallback = Callable[[int, BaseException, float], None]


async def run_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_retry: RetryCallback | None = None,
    metrics: MetricsRecorder | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> tuple[T, int]:
    """Await ``fn()`` under ``policy``.

    Args:
        fn: Zero-argument callable returning an awaitable
        policy: Retry policy
        on_retry: Called before each retry with (attempt, error, delay)
        metrics: Recorder for ``retry_attempts_total``
        sleep: Awaitable sleep (injectable for tests)

    Returns:
        ``(result, attempts)``

    Raises:
        RetryExhausted: If every attempt failed with a retryable error
        The original error if it was not retryable
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await fn()
        except Exception as exc:
            if not policy.should_retry(attempt, exc):
                if metrics is not None:
                    metrics.record("retry_attempts_total", outcome="failure")
                if attempt >= policy.max_attempts and policy.retryable(exc) and not isinstance(
                    exc, ADMISSION_ERRORS
                ):
                    raise RetryExhausted(
                        f"Gave up after {attempt} attempts: {exc}",
                        attempts=attempt,
                        last_error=exc,
                    ) from exc
                raise

            delay = policy.delay_for(attempt)
            if metrics is not None:
                metrics.record("retry_attempts_total", outcome="retry")
            logger.warning(
                "retry.scheduled",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=round(delay, 3),
                error=repr(exc),
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await sleep(delay)
            continue

        if metrics is not None:
            metrics.record("retry_attempts_total", outcome="success")
        return result, attempt


__all__ = ["ADMISSION_ERRORS", "RetryPolicy", "run_with_retry"]

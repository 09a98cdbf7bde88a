"""Circuit breaker pattern for fault tolerance.

Prevents cascading failures by failing fast when an upstream is
unhealthy, instead of piling more calls onto it.

States:
    CLOSED: Normal operation. Outcomes feed a rolling time window; once the
        window holds at least ``minimum_calls`` outcomes and the failure
        ratio reaches ``failure_threshold`` the circuit opens.
    OPEN: Calls fail immediately with CircuitOpenError. After
        ``reset_timeout`` the circuit moves to HALF_OPEN.
    HALF_OPEN: Exactly one probe call is let through. Success closes the
        circuit and clears the window; failure reopens it. Callers arriving
        while the probe is in flight are rejected, not queued.

Every call carries a timeout; a call exceeding it is cancelled, counted
as a failure and surfaced as TimeoutExpired.

Example:
    >>> from bulwark.execution.circuit_breaker import CircuitBreaker
    >>>
    >>> breaker = CircuitBreaker(
    ...     name="billing-api",
    ...     failure_threshold=0.5,
    ...     minimum_calls=10,
    ...     reset_timeout=30.0,
    ... )
    >>> invoice = await breaker.execute(lambda: client.get_invoice(42), timeout=2.0)
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from bulwark.core.clock import Clock, monotonic
from bulwark.core.errors import CircuitOpenError, ContractViolation
from bulwark.core.logging import get_logger
from bulwark.execution.timeout import run_with_timeout_async
from bulwark.observability.metrics import MetricsRecorder

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of a breaker, for monitoring and tests."""

    name: str
    state: CircuitState
    consecutive_failures: int
    window_successes: int
    window_failures: int
    opened_at: float | None
    half_open_probe_in_flight: bool

    @property
    def failure_ratio(self) -> float:
        total = self.window_successes + self.window_failures
        if total == 0:
            return 0.0
        return self.window_failures / total


def _count_all(exc: BaseException) -> bool:
    return True


class CircuitBreaker:
    """Circuit breaker guarding one upstream identity.

    Attributes:
        name: Upstream identity
        failure_threshold: Failure ratio (0, 1] that opens the circuit
        minimum_calls: Outcomes required in the window before it may open
        window_seconds: Length of the rolling outcome window
        reset_timeout: Seconds OPEN before a probe is allowed
        call_timeout: Default per-call timeout in seconds
        success_streak_reset: Consecutive CLOSED successes that clear the window
    """

    def __init__(
        self,
        name: str = "default",
        *,
        failure_threshold: float = 0.5,
        minimum_calls: int = 10,
        window_seconds: float = 30.0,
        reset_timeout: float = 30.0,
        call_timeout: float | None = 5.0,
        success_streak_reset: int = 20,
        is_failure: Callable[[BaseException], bool] = _count_all,
        clock: Clock = monotonic,
        metrics: MetricsRecorder | None = None,
    ):
        if not 0 < failure_threshold <= 1:
            raise ContractViolation(
                f"failure_threshold must be in (0, 1], got {failure_threshold}"
            )
        if minimum_calls <= 0:
            raise ContractViolation(f"minimum_calls must be positive, got {minimum_calls}")
        if window_seconds <= 0:
            raise ContractViolation(f"window_seconds must be positive, got {window_seconds}")
        if reset_timeout <= 0:
            raise ContractViolation(f"reset_timeout must be positive, got {reset_timeout}")
        if call_timeout is not None and call_timeout <= 0:
            raise ContractViolation(f"call_timeout must be positive, got {call_timeout}")
        if success_streak_reset <= 0:
            raise ContractViolation(
                f"success_streak_reset must be positive, got {success_streak_reset}"
            )

        self.name = name
        self.failure_threshold = failure_threshold
        self.minimum_calls = minimum_calls
        self.window_seconds = window_seconds
        self.reset_timeout = reset_timeout
        self.call_timeout = call_timeout
        self.success_streak_reset = success_streak_reset
        self._is_failure = is_failure
        self._clock = clock
        self._metrics = metrics or MetricsRecorder()

        self._state = CircuitState.CLOSED
        self._window: deque[tuple[float, bool]] = deque()
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._opened_at: float | None = None
        self._probe_in_flight = False
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, name: str, config: Any, **kwargs: Any) -> CircuitBreaker:
        """Build from a :class:`~bulwark.core.settings.BreakerConfig`."""
        return cls(
            name,
            failure_threshold=config.failure_threshold,
            minimum_calls=config.minimum_calls,
            window_seconds=config.window_seconds,
            reset_timeout=config.reset_timeout_seconds,
            call_timeout=config.call_timeout_seconds,
            success_streak_reset=config.success_streak_reset,
            **kwargs,
        )

    # ── State inspection ────────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            self._check_state_transition()
            return self._state

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._check_state_transition()
            self._prune_window()
            failures = sum(1 for _, ok in self._window if not ok)
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                window_successes=len(self._window) - failures,
                window_failures=failures,
                opened_at=self._opened_at,
                half_open_probe_in_flight=self._probe_in_flight,
            )

    # ── Transitions (lock held) ─────────────────────────────────────────

    def _check_state_transition(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.reset_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._consecutive_successes = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False
        elif new_state == CircuitState.CLOSED:
            self._clear_stats()
            self._opened_at = None
            self._probe_in_flight = False

        self._metrics.record(
            "breaker_transitions_total",
            breaker=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
        )
        logger.info(
            "breaker.state_changed",
            breaker=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    def _clear_stats(self) -> None:
        self._window.clear()
        self._consecutive_failures = 0
        self._consecutive_successes = 0

    def _prune_window(self) -> None:
        cutoff = self._clock() - self.window_seconds
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    def _should_trip(self) -> bool:
        self._prune_window()
        total = len(self._window)
        if total < self.minimum_calls:
            return False
        failures = sum(1 for _, ok in self._window if not ok)
        return failures / total >= self.failure_threshold

    # ── Admission and outcome bookkeeping ───────────────────────────────

    def _admit(self) -> bool:
        """Admit a call or raise CircuitOpenError. Returns True for the probe."""
        with self._lock:
            self._check_state_transition()

            if self._state == CircuitState.CLOSED:
                return False

            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return True

            self._metrics.record("breaker_calls_total", breaker=self.name, outcome="rejected")
            retry_after_ms = 0
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                remaining = self.reset_timeout - (self._clock() - self._opened_at)
                retry_after_ms = max(0, int(remaining * 1000))
            raise CircuitOpenError(
                f"Circuit '{self.name}' is {self._state.value}, rejecting request",
                retry_after_ms=retry_after_ms,
            ).with_context(upstream=self.name)

    def record_success(self, *, probe: bool = False) -> None:
        """Record a successful call."""
        with self._lock:
            self._metrics.record("breaker_calls_total", breaker=self.name, outcome="success")
            if probe:
                self._probe_in_flight = False
                if self._state == CircuitState.HALF_OPEN:
                    self._transition_to(CircuitState.CLOSED)
                    return

            self._window.append((self._clock(), True))
            self._consecutive_failures = 0
            if self._state == CircuitState.CLOSED:
                self._consecutive_successes += 1
                if self._consecutive_successes >= self.success_streak_reset:
                    self._clear_stats()

    def record_failure(self, error: BaseException | None = None, *, probe: bool = False) -> None:
        """Record a failed call."""
        with self._lock:
            self._metrics.record("breaker_calls_total", breaker=self.name, outcome="failure")
            self._window.append((self._clock(), False))
            self._consecutive_failures += 1
            self._consecutive_successes = 0

            if probe:
                self._probe_in_flight = False
                if self._state == CircuitState.HALF_OPEN:
                    self._transition_to(CircuitState.OPEN)
                    return

            if self._state == CircuitState.CLOSED and self._should_trip():
                logger.warning(
                    "breaker.tripped",
                    breaker=self.name,
                    error=repr(error) if error is not None else None,
                )
                self._transition_to(CircuitState.OPEN)

    def _release_probe(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """Execute ``fn`` through the circuit breaker.

        Args:
            fn: Zero-argument callable returning an awaitable
            timeout: Per-call timeout; defaults to ``call_timeout``

        Returns:
            ``fn``'s result.

        Raises:
            CircuitOpenError: If the circuit rejects the call
            TimeoutExpired: If the call exceeded its timeout
        """
        probe = self._admit()
        try:
            result = await run_with_timeout_async(
                fn,
                timeout if timeout is not None else self.call_timeout,
                operation=self.name,
            )
        except asyncio.CancelledError:
            # The caller went away; the outcome says nothing about the upstream.
            if probe:
                self._release_probe()
            raise
        except Exception as exc:
            if self._is_failure(exc):
                self.record_failure(exc, probe=probe)
            else:
                self.record_success(probe=probe)
            raise
        self.record_success(probe=probe)
        return result

    # ── Operator controls ───────────────────────────────────────────────

    def reset(self) -> None:
        """Reset circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._clear_stats()

    def force_open(self) -> None:
        """Force circuit to open state (for maintenance)."""
        with self._lock:
            self._transition_to(CircuitState.OPEN)
            self._opened_at = self._clock()


class CircuitBreakerRegistry:
    """One breaker per upstream identity, created on first use.

    Held as an instance by the gateway and passed to call sites, so each
    test can work with a fresh registry.
    """

    def __init__(self, factory: Callable[[str], CircuitBreaker] | None = None):
        self._factory = factory or (lambda name: CircuitBreaker(name))
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()

    def get(self, name: str) -> CircuitBreaker | None:
        """Get a circuit breaker by name, returns None if not found."""
        with self._lock:
            return self._breakers.get(name)

    def get_or_create(self, name: str) -> CircuitBreaker:
        """Get or create a circuit breaker by name."""
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = self._factory(name)
            return self._breakers[name]

    def list_all(self) -> list[str]:
        with self._lock:
            return list(self._breakers.keys())

    def snapshots(self) -> list[CircuitSnapshot]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [breaker.snapshot() for breaker in breakers]

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()


__all__ = [
    "CircuitState",
    "CircuitSnapshot",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]

"""Tests for retry policy and the retry loop."""

import pytest

from bulwark.core.errors import (
    CircuitOpenError,
    ContractViolation,
    RateLimitExceeded,
    RetryExhausted,
    UpstreamError,
)
from bulwark.core.settings import RetryConfig
from bulwark.execution.retry import RetryPolicy, run_with_retry


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def flaky(failures, exc_factory=lambda: ConnectionError("reset"), result="ok"):
    state = {"calls": 0}

    async def fn():
        state["calls"] += 1
        if state["calls"] <= failures:
            raise exc_factory()
        return result

    return fn, state


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.backoff_base_ms == 100

    def test_exponential_delays_without_jitter(self):
        policy = RetryPolicy(backoff_base_ms=100, backoff_multiplier=2.0, max_backoff_ms=350)
        delays = [policy.delay_for(n, jitter=False) for n in range(1, 5)]
        assert delays == pytest.approx([0.1, 0.2, 0.35, 0.35])

    def test_jitter_stays_within_spread(self):
        policy = RetryPolicy(backoff_base_ms=100, jitter=0.5)
        for _ in range(100):
            assert 0.05 <= policy.delay_for(1) <= 0.15

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"backoff_base_ms": -1},
            {"backoff_multiplier": 0.5},
            {"backoff_base_ms": 500, "max_backoff_ms": 100},
            {"jitter": 1.5},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ContractViolation):
            RetryPolicy(**kwargs)

    def test_from_config(self):
        policy = RetryPolicy.from_config(RetryConfig(max_attempts=5, jitter=0))
        assert policy.max_attempts == 5
        assert policy.jitter == 0

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(1, TimeoutError())
        assert not policy.should_retry(3, TimeoutError())
        assert not policy.should_retry(1, ValueError())
        assert not policy.should_retry(1, CircuitOpenError())


class TestRunWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        fn, state = flaky(0)
        assert await run_with_retry(fn, RetryPolicy()) == ("ok", 1)
        assert state["calls"] == 1

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, metrics):
        fn, state = flaky(2)
        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=3, jitter=0)

        result, attempts = await run_with_retry(fn, policy, metrics=metrics, sleep=sleep)

        assert (result, attempts) == ("ok", 3)
        assert sleep.delays == pytest.approx([0.1, 0.2])
        assert metrics.value("retry_attempts_total", outcome="retry") == 2
        assert metrics.value("retry_attempts_total", outcome="success") == 1

    @pytest.mark.asyncio
    async def test_exhaustion_raises_retry_exhausted(self):
        fn, state = flaky(10)
        with pytest.raises(RetryExhausted) as exc_info:
            await run_with_retry(fn, RetryPolicy(max_attempts=3), sleep=RecordingSleep())

        assert state["calls"] == 3
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, ConnectionError)

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self):
        fn, state = flaky(10, exc_factory=lambda: UpstreamError("card declined"))
        sleep = RecordingSleep()
        with pytest.raises(UpstreamError):
            await run_with_retry(fn, RetryPolicy(max_attempts=5), sleep=sleep)
        assert state["calls"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        fn, state = flaky(1, exc_factory=lambda: UpstreamError("503"))
        policy = RetryPolicy(retryable=lambda exc: isinstance(exc, UpstreamError))
        assert await run_with_retry(fn, policy, sleep=RecordingSleep()) == ("ok", 2)

    @pytest.mark.parametrize(
        "exc_factory",
        [lambda: CircuitOpenError(), lambda: RateLimitExceeded(retry_after_ms=100)],
    )
    @pytest.mark.asyncio
    async def test_admission_errors_stop_the_loop(self, exc_factory):
        fn, state = flaky(10, exc_factory=exc_factory)
        with pytest.raises((CircuitOpenError, RateLimitExceeded)):
            await run_with_retry(fn, RetryPolicy(max_attempts=5), sleep=RecordingSleep())
        assert state["calls"] == 1

    @pytest.mark.asyncio
    async def test_on_retry_callback(self):
        fn, _ = flaky(1)
        seen = []
        await run_with_retry(
            fn,
            RetryPolicy(jitter=0),
            on_retry=lambda attempt, exc, delay: seen.append((attempt, type(exc), delay)),
            sleep=RecordingSleep(),
        )
        assert seen == [(1, ConnectionError, pytest.approx(0.1))]

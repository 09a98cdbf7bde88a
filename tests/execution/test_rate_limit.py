"""Tests for token-bucket rate limiting."""

import threading

import pytest

from bulwark.core.errors import ContractViolation, RateLimitExceeded
from bulwark.core.settings import LimiterConfig
from bulwark.execution.rate_limit import Admission, RateLimiter, TokenBucket


class TestTokenBucket:
    """Tests for a single bucket."""

    def test_starts_full(self, clock):
        bucket = TokenBucket(5, 5.0, clock=clock)
        assert bucket.tokens == 5

    @pytest.mark.parametrize("capacity, rate", [(0, 1.0), (-1, 1.0), (5, 0), (5, -2.0)])
    def test_invalid_configuration(self, capacity, rate):
        with pytest.raises(ContractViolation):
            TokenBucket(capacity, rate)

    def test_refill_is_proportional_and_capped(self, clock):
        bucket = TokenBucket(5, 5.0, clock=clock)
        for _ in range(5):
            assert bucket.try_acquire().allowed
        clock.advance(0.4)
        assert bucket.tokens == pytest.approx(2.0)
        clock.advance(60)
        assert bucket.tokens == 5

    def test_denial_reports_wait(self, clock):
        bucket = TokenBucket(2, 4.0, clock=clock)
        bucket.try_acquire(2)
        admission = bucket.try_acquire(1)
        assert admission == Admission(allowed=False, retry_after_ms=250, scope="key")

    def test_cost_out_of_range(self, clock):
        bucket = TokenBucket(3, 1.0, clock=clock)
        with pytest.raises(ContractViolation):
            bucket.try_acquire(0)
        with pytest.raises(ContractViolation):
            bucket.try_acquire(4)

    def test_tokens_stay_within_bounds(self, clock):
        bucket = TokenBucket(3, 2.0, clock=clock)
        for step in range(200):
            bucket.try_acquire(1 + step % 3)
            clock.advance(0.05 * (step % 7))
            assert 0 <= bucket.tokens <= 3


class TestRateLimiter:
    """Tests for keyed buckets with an optional global bucket."""

    def test_round_trip_scenario(self, clock):
        """capacity=5, 5/s: five pass, the sixth waits ~200ms, then passes."""
        limiter = RateLimiter(5, 5.0, clock=clock)

        for _ in range(5):
            assert limiter.try_acquire("client").allowed

        denied = limiter.try_acquire("client")
        assert not denied.allowed
        assert denied.retry_after_ms == 200

        clock.advance(denied.retry_after_ms / 1000)
        assert limiter.try_acquire("client").allowed

    def test_denied_request_succeeds_after_waiting(self, clock):
        limiter = RateLimiter(4, 3.0, clock=clock)
        limiter.try_acquire("k", 4)
        for cost in (1, 2, 3):
            denied = limiter.try_acquire("k", cost)
            assert not denied.allowed
            clock.advance(denied.retry_after_ms / 1000)
            assert limiter.try_acquire("k", cost).allowed

    def test_keys_are_independent(self, clock):
        limiter = RateLimiter(1, 1.0, clock=clock)
        assert limiter.try_acquire("a").allowed
        assert not limiter.try_acquire("a").allowed
        assert limiter.try_acquire("b").allowed

    def test_global_bucket_applies_to_all_keys(self, clock):
        limiter = RateLimiter(
            5, 5.0, global_capacity=3, global_refill_rate_per_second=1.0, clock=clock
        )
        assert limiter.try_acquire("a").allowed
        assert limiter.try_acquire("b").allowed
        assert limiter.try_acquire("c").allowed

        denied = limiter.try_acquire("d")
        assert not denied.allowed
        assert denied.scope == "global"
        assert denied.retry_after_ms == 1000

    def test_denial_consumes_nothing(self, clock):
        limiter = RateLimiter(
            2, 1.0, global_capacity=10, global_refill_rate_per_second=1.0, clock=clock
        )
        limiter.try_acquire("a", 2)
        assert not limiter.try_acquire("a").allowed
        assert limiter.global_bucket.tokens == 8

    def test_denial_reports_larger_wait(self, clock):
        limiter = RateLimiter(
            1, 10.0, global_capacity=1, global_refill_rate_per_second=1.0, clock=clock
        )
        limiter.try_acquire("a")
        denied = limiter.try_acquire("a")
        assert denied.retry_after_ms == 1000
        assert denied.scope == "global"

    def test_invalid_configuration(self):
        with pytest.raises(ContractViolation):
            RateLimiter(0, 1.0)
        with pytest.raises(ContractViolation):
            RateLimiter(1, 0)
        with pytest.raises(ContractViolation):
            RateLimiter(1, 1.0, global_capacity=10)

    def test_cost_above_capacity_rejected_without_creating_bucket(self, clock):
        limiter = RateLimiter(3, 1.0, clock=clock)
        with pytest.raises(ContractViolation):
            limiter.try_acquire("k", 4)
        assert len(limiter) == 0

    def test_idle_buckets_evicted_lru(self, clock):
        limiter = RateLimiter(1, 1.0, max_keys=2, clock=clock)
        limiter.try_acquire("a")
        limiter.try_acquire("b")
        limiter.try_acquire("a")
        limiter.try_acquire("c")

        assert len(limiter) == 2
        assert limiter.get("b") is None
        assert limiter.get("a") is not None

    def test_acquire_or_raise(self, clock):
        limiter = RateLimiter(1, 2.0, clock=clock)
        limiter.acquire_or_raise("k")
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.acquire_or_raise("k")
        assert exc_info.value.retry_after_ms == 500
        assert exc_info.value.context.key == "k"

    def test_records_decisions(self, clock, metrics):
        limiter = RateLimiter(1, 1.0, clock=clock, metrics=metrics)
        limiter.try_acquire("k")
        limiter.try_acquire("k")
        assert metrics.value("limiter_decisions_total", allowed=True, scope="none") == 1
        assert metrics.value("limiter_decisions_total", allowed=False, scope="key") == 1

    def test_from_config(self, clock):
        config = LimiterConfig(
            capacity=7,
            refill_rate_per_second=2.0,
            global_capacity=50,
            global_refill_rate_per_second=20.0,
        )
        limiter = RateLimiter.from_config(config, clock=clock)
        assert limiter.capacity == 7
        assert limiter.global_bucket.capacity == 50

    def test_concurrent_threads_never_over_admit(self, clock):
        limiter = RateLimiter(
            50, 1.0, global_capacity=80, global_refill_rate_per_second=1.0, clock=clock
        )
        admitted = []
        lock = threading.Lock()

        def worker(key):
            for _ in range(40):
                if limiter.try_acquire(key).allowed:
                    with lock:
                        admitted.append(key)

        threads = [threading.Thread(target=worker, args=(f"k{i % 2}",)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(admitted) == 80
        assert admitted.count("k0") <= 50
        assert admitted.count("k1") <= 50

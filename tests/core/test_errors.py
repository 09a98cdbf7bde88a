"""Tests for the gateway error taxonomy."""

import pytest

from bulwark.core.errors import (
    BulwarkError,
    CircuitOpenError,
    ContractViolation,
    ErrorCategory,
    ErrorContext,
    IdempotencyConflict,
    OperationFailed,
    RateLimitExceeded,
    RetryExhausted,
    StaleDataServed,
    TimeoutExpired,
    UpstreamError,
    http_status_for,
    is_retryable,
)


class TestBulwarkError:
    """Tests for the base error."""

    def test_defaults(self):
        err = BulwarkError("boom")
        assert err.message == "boom"
        assert err.category == ErrorCategory.INTERNAL
        assert err.retryable is False
        assert err.retry_after_ms is None
        assert err.cause is None

    def test_cause_is_chained(self):
        original = ValueError("bad")
        err = UpstreamError("upstream failed", cause=original)
        assert err.__cause__ is original
        assert err.to_dict()["cause"] == "bad"

    def test_with_context_sets_known_fields_and_metadata(self):
        err = UpstreamError("bad payload").with_context(upstream="billing", status=502)
        assert err.context.upstream == "billing"
        assert err.context.metadata == {"status": 502}

    def test_to_dict(self):
        err = RateLimitExceeded("slow down", retry_after_ms=200).with_context(key="client-1")
        data = err.to_dict()
        assert data["error_type"] == "RateLimitExceeded"
        assert data["category"] == "RATE_LIMIT"
        assert data["retryable"] is True
        assert data["retry_after_ms"] == 200
        assert data["context"] == {"key": "client-1"}

    def test_empty_context_omitted(self):
        assert "context" not in BulwarkError("x").to_dict()
        assert ErrorContext().to_dict() == {}


class TestTaxonomy:
    """Each error knows its category and whether waiting helps."""

    def test_rate_limit(self):
        err = RateLimitExceeded(retry_after_ms=150, scope="global")
        assert err.retryable
        assert err.scope == "global"
        assert err.category == ErrorCategory.RATE_LIMIT

    def test_circuit_open(self):
        err = CircuitOpenError(retry_after_ms=1000)
        assert err.retryable
        assert err.category == ErrorCategory.CIRCUIT

    def test_timeout_is_builtin_timeout_error(self):
        err = TimeoutExpired(2.0, "fetch")
        assert isinstance(err, TimeoutError)
        assert err.timeout == 2.0
        assert err.operation == "fetch"
        assert "fetch" in str(err)
        assert err.retryable

    def test_upstream_retryable_chosen_by_raiser(self):
        assert UpstreamError("bad").retryable is False
        assert UpstreamError("503", retryable=True).retryable is True

    def test_contract_violation_never_retryable(self):
        err = ContractViolation("capacity must be positive")
        assert err.category == ErrorCategory.CONFIG
        assert not is_retryable(err)

    def test_retry_exhausted_keeps_last_error(self):
        last = ConnectionError("reset")
        err = RetryExhausted("gave up", attempts=3, last_error=last)
        assert err.attempts == 3
        assert err.last_error is last
        assert err.__cause__ is last

    def test_operation_failed(self):
        err = OperationFailed(
            "card declined",
            idempotency_key="pay-1",
            attempts=1,
            reason="non_retryable",
            error_type="UpstreamError",
        )
        assert err.context.idempotency_key == "pay-1"
        assert err.reason == "non_retryable"
        assert not err.retryable


class TestStaleDataServed:
    def test_stale_is_not_degraded(self):
        marker = StaleDataServed(age_seconds=1.5)
        assert marker.reason == "stale"
        assert not marker.degraded

    def test_error_reason_is_degraded(self):
        assert StaleDataServed(age_seconds=1.5, reason="TimeoutExpired").degraded

    def test_not_an_exception(self):
        assert not isinstance(StaleDataServed(age_seconds=0), BaseException)


class TestIsRetryable:
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (RateLimitExceeded(), True),
            (CircuitOpenError(), True),
            (TimeoutExpired(1.0), True),
            (TimeoutError(), True),
            (ConnectionError(), True),
            (UpstreamError("bad"), False),
            (ValueError("bad"), False),
        ],
    )
    def test_default_predicate(self, exc, expected):
        assert is_retryable(exc) is expected


class TestHttpStatus:
    @pytest.mark.parametrize(
        "exc, status",
        [
            (RateLimitExceeded(), 429),
            (CircuitOpenError(), 503),
            (TimeoutExpired(1.0), 504),
            (TimeoutError(), 504),
            (UpstreamError("bad"), 502),
            (RetryExhausted("x", attempts=3, last_error=ValueError()), 502),
            (IdempotencyConflict("busy"), 409),
            (RuntimeError("?"), 500),
        ],
    )
    def test_mapping(self, exc, status):
        assert http_status_for(exc) == status

"""Tests for ``RedisTokenBucketLimiter`` against a mocked client.

Requires ``redis`` package. Tests are skipped if not installed.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

redis = pytest.importorskip("redis")

from bulwark.core.errors import ContractViolation  # noqa: E402
from bulwark.execution.rate_limit import RedisTokenBucketLimiter  # noqa: E402


@pytest.fixture
def client_and_script():
    script = AsyncMock()
    client = MagicMock()
    client.register_script.return_value = script
    return client, script


class TestRedisTokenBucketLimiter:
    def test_registers_script(self, client_and_script):
        client, _ = client_and_script
        RedisTokenBucketLimiter(5, 5.0, client=client)
        client.register_script.assert_called_once()
        assert "HMGET" in client.register_script.call_args[0][0]

    @pytest.mark.asyncio
    async def test_allowed(self, client_and_script, clock, metrics):
        client, script = client_and_script
        script.return_value = [1, 0]
        limiter = RedisTokenBucketLimiter(5, 5.0, client=client, clock=clock, metrics=metrics)

        admission = await limiter.try_acquire("client-1")

        assert admission.allowed
        kwargs = script.await_args.kwargs
        assert kwargs["keys"] == ["bulwark:bucket:client-1"]
        assert kwargs["args"][:4] == [5, 5.0, clock(), 1]
        assert metrics.value("limiter_decisions_total", allowed=True, scope="none") == 1

    @pytest.mark.asyncio
    async def test_denied(self, client_and_script):
        client, script = client_and_script
        script.return_value = [0, 200]
        limiter = RedisTokenBucketLimiter(5, 5.0, client=client)

        admission = await limiter.try_acquire("client-1")

        assert not admission.allowed
        assert admission.retry_after_ms == 200
        assert admission.scope == "key"

    @pytest.mark.asyncio
    async def test_cost_validated_before_io(self, client_and_script):
        client, script = client_and_script
        limiter = RedisTokenBucketLimiter(5, 5.0, client=client)
        with pytest.raises(ContractViolation):
            await limiter.try_acquire("k", 6)
        script.assert_not_awaited()

    def test_invalid_configuration(self, client_and_script):
        client, _ = client_and_script
        with pytest.raises(ContractViolation):
            RedisTokenBucketLimiter(0, 5.0, client=client)

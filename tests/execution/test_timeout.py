"""Tests for timeout enforcement."""

import asyncio

import pytest

from bulwark.core.errors import TimeoutExpired
from bulwark.execution.timeout import (
    get_current_deadline,
    get_effective_timeout,
    run_with_timeout_async,
    with_deadline_async,
)


class TestRunWithTimeout:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def quick():
            return 42

        assert await run_with_timeout_async(quick, 1.0) == 42

    @pytest.mark.asyncio
    async def test_expiry_raises_and_cancels(self):
        cancelled = asyncio.Event()

        async def hang():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(TimeoutExpired) as exc_info:
            await run_with_timeout_async(hang, 0.01, "fetch-profile")

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.operation == "fetch-profile"
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_none_without_deadline_waits(self):
        async def quick():
            await asyncio.sleep(0)
            return "ok"

        assert await run_with_timeout_async(quick, None) == "ok"

    @pytest.mark.asyncio
    async def test_other_errors_pass_through(self):
        async def broken():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await run_with_timeout_async(broken, 1.0)


class TestDeadlines:
    def test_no_deadline_outside_block(self):
        assert get_current_deadline() is None
        assert get_effective_timeout(5.0) == 5.0

    @pytest.mark.asyncio
    async def test_inner_timeout_clamped_to_outer(self):
        async with with_deadline_async(0.5, "checkout") as ctx:
            assert get_current_deadline() is ctx
            assert get_effective_timeout(30.0) <= 0.5
        assert get_current_deadline() is None

    @pytest.mark.asyncio
    async def test_block_expiry(self):
        with pytest.raises(TimeoutExpired) as exc_info:
            async with with_deadline_async(0.01, "checkout"):
                await asyncio.sleep(10)
        assert exc_info.value.operation == "checkout"

    @pytest.mark.asyncio
    async def test_nested_call_uses_remaining_budget(self):
        async def hang():
            await asyncio.sleep(10)

        with pytest.raises(TimeoutExpired):
            async with with_deadline_async(0.05):
                await run_with_timeout_async(hang, 30.0, "inner")

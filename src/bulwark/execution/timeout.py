"""Timeout enforcement for downstream calls.

Every downstream call made by the gateway carries a deadline. On expiry
the call is cancelled (not left running) and the caller receives
:class:`~bulwark.core.errors.TimeoutExpired`, which is also a built-in
``TimeoutError``.

Nested deadlines: an inner deadline never extends an outer one; the
effective timeout is the smaller of the requested value and the time
remaining on the enclosing deadline.

Examples:
    >>> result = await run_with_timeout_async(lambda: fetch(url), 2.0, "fetch")

    >>> async with with_deadline_async(10.0, "checkout"):
    ...     await reserve_stock()
    ...     await charge_card()   # shares the remaining 10s budget
"""

from __future__ import annotations

import asyncio
import contextvars
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TypeVar

from bulwark.core.errors import TimeoutExpired

T = TypeVar("T")


@dataclass
class DeadlineContext:
    """Deadline state for one ``with_deadline_async`` block.

    Attributes:
        deadline: Absolute deadline (monotonic clock)
        timeout_seconds: Original timeout value in seconds
        operation: Name/description of the operation
    """

    deadline: float
    timeout_seconds: float
    operation: str = "operation"
    start_time: float = field(default_factory=time.monotonic)

    def remaining(self) -> float:
        """Seconds until the deadline (negative once expired)."""
        return self.deadline - time.monotonic()

    def is_expired(self) -> bool:
        return time.monotonic() >= self.deadline


_current_deadline: contextvars.ContextVar[DeadlineContext | None] = contextvars.ContextVar(
    "bulwark_deadline", default=None
)


def get_current_deadline() -> DeadlineContext | None:
    """Innermost active deadline for the running task, if any."""
    return _current_deadline.get()


def get_effective_timeout(requested: float) -> float:
    """Clamp ``requested`` to the time left on the enclosing deadline."""
    current = _current_deadline.get()
    if current is None:
        return requested
    return max(0.0, min(requested, current.remaining()))


@asynccontextmanager
async def with_deadline_async(
    seconds: float, operation: str = "operation"
) -> AsyncIterator[DeadlineContext]:
    """Bound the enclosed block to ``seconds``.

    Raises:
        TimeoutExpired: If the block does not finish in time.
    """
    effective = get_effective_timeout(seconds)
    ctx = DeadlineContext(
        deadline=time.monotonic() + effective,
        timeout_seconds=seconds,
        operation=operation,
    )
    token = _current_deadline.set(ctx)
    try:
        async with asyncio.timeout(effective):
            yield ctx
    except TimeoutError as exc:
        if isinstance(exc, TimeoutExpired):
            raise
        raise TimeoutExpired(seconds, operation) from exc
    finally:
        _current_deadline.reset(token)


async def run_with_timeout_async(
    fn: Callable[[], Awaitable[T]],
    seconds: float | None,
    operation: str = "operation",
) -> T:
    """Await ``fn()`` with a timeout, cancelling it on expiry.

    Args:
        fn: Zero-argument callable returning an awaitable
        seconds: Timeout; ``None`` means only an enclosing deadline applies
        operation: Name used in the error message

    Raises:
        TimeoutExpired: If the call exceeds its allotted duration.
    """
    if seconds is None:
        current = _current_deadline.get()
        if current is None:
            return await fn()
        seconds = current.timeout_seconds
    effective = get_effective_timeout(seconds)
    try:
        return await asyncio.wait_for(fn(), timeout=effective)
    except TimeoutExpired:
        raise
    except TimeoutError as exc:
        raise TimeoutExpired(seconds, operation) from exc


__all__ = [
    "DeadlineContext",
    "TimeoutExpired",
    "get_current_deadline",
    "get_effective_timeout",
    "run_with_timeout_async",
    "with_deadline_async",
]

"""Single-flight coalescing of concurrent identical calls.

N callers asking for the same key while a call is in flight share that
one call: the producer runs once and every waiter receives the same
result or the same exception.

ARCHITECTURE
────────────
::

    dedupe("user:42", producer)
      │
      ├── no live call ──► register _Call, start producer in its own task
      │                      (leader)
      └── live call ─────► join it (follower)

    every caller: await asyncio.shield(call.task)
    task settles ─► record removed, next caller starts fresh

Registration-or-join happens without a suspension point, so on one event
loop no two producers can ever run for the same key. A record whose task
has already settled but has not been removed yet is treated as absent.

The producer runs in its own task, so a cancelled waiter only drops its
own interest; the call keeps serving everyone else.

Example::

    flights = SingleFlight()
    profile = await flights.dedupe("user:42", lambda: fetch_profile(42))
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from bulwark.core.logging import get_logger
from bulwark.observability.metrics import MetricsRecorder

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class _Call(Generic[T]):
    key: str
    task: asyncio.Task[T]
    subscribers: int = 0


class SingleFlight:
    """Deduplicates concurrent calls per key.

    Confined to one event loop: the shared task belongs to the loop that
    started it.
    """

    def __init__(self, *, metrics: MetricsRecorder | None = None):
        self._calls: dict[str, _Call[Any]] = {}
        self._metrics = metrics or MetricsRecorder()

    async def dedupe(self, key: str, producer: Callable[[], Awaitable[T]]) -> T:
        """Run ``producer`` once for all concurrent callers of ``key``.

        Args:
            key: Coalescing key
            producer: Zero-argument callable returning an awaitable

        Returns:
            The producer's result, shared by every waiter.

        Raises:
            Whatever the producer raised, identically for every waiter.
        """
        call = self._calls.get(key)
        if call is None or call.task.done():
            call = self._start(key, producer)
            role = "leader"
        else:
            role = "follower"
        call.subscribers += 1
        self._metrics.record("singleflight_calls_total", role=role)

        try:
            return await asyncio.shield(call.task)
        finally:
            call.subscribers -= 1

    def _start(self, key: str, producer: Callable[[], Awaitable[T]]) -> _Call[T]:
        async def run() -> T:
            return await producer()

        task = asyncio.ensure_future(run())
        call: _Call[T] = _Call(key=key, task=task)
        self._calls[key] = call
        task.add_done_callback(lambda t: self._settle(call, t))
        return call

    def _settle(self, call: _Call[Any], task: asyncio.Task[Any]) -> None:
        if self._calls.get(call.key) is call:
            del self._calls[call.key]
        # Retrieve the outcome so an abandoned failure is not reported as unhandled.
        if not task.cancelled() and task.exception() is not None and call.subscribers == 0:
            logger.debug(
                "singleflight.abandoned_failure",
                key=call.key,
                error=repr(task.exception()),
            )

    def in_flight(self, key: str) -> bool:
        """True while a call for ``key`` is running."""
        call = self._calls.get(key)
        return call is not None and not call.task.done()

    def subscribers(self, key: str) -> int:
        """Number of callers currently waiting on ``key``."""
        call = self._calls.get(key)
        return call.subscribers if call is not None else 0

    def __len__(self) -> int:
        return sum(1 for call in self._calls.values() if not call.task.done())


__all__ = ["SingleFlight"]

"""Read-through, stale-aware cache layer.

``get(key, fetch)`` serves from cache while an entry is fresh, serves stale
data while revalidating in the background during the grace window, and
fetches synchronously once the entry has expired. Every upstream fetch
goes Limiter → SingleFlight → CircuitBreaker → fetch.

Entry timeline::

    inserted_at        fresh_until          stale_until       + stale_if_error
        │── fresh hit ─────│── stale hit ─────────│── miss ───────────│
                             (background refresh)   (degraded value on
                                                     fetch failure)

Invalidation bumps a per-key generation. Fetches are coalesced per
(key, generation), and a result computed against a superseded generation
is handed to the callers that were already waiting for it but never
stored, so no caller arriving after ``invalidate`` can see a value older
than the invalidation. With a shared store, a write that lands after the
invalidation is retracted, and rows inserted before it are never read back.

Example::

    cache = ReadThroughCache(breaker=CircuitBreaker("profiles"), ttl=60, stale_grace=30)
    result = await cache.get("user:42", lambda: api.get_profile(42))
    if result.stale is not None:
        response.headers["Warning"] = '110 - "Response is Stale"'
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from bulwark.core.clock import Clock, monotonic
from bulwark.core.errors import ContractViolation, RateLimitExceeded, StaleDataServed
from bulwark.core.logging import LogContext, get_logger
from bulwark.core.stores import KeyValueStore
from bulwark.execution.circuit_breaker import CircuitBreaker
from bulwark.execution.rate_limit import RateLimiter
from bulwark.execution.singleflight import SingleFlight
from bulwark.observability.metrics import MetricsRecorder

logger = get_logger(__name__)

T = TypeVar("T")
Fetch = Callable[[], Awaitable[Any]]


class CacheStatus(str, Enum):
    """How a ``get`` was served."""

    FRESH = "fresh"        # now < fresh_until, no upstream call
    STALE = "stale"        # grace window, background refresh scheduled
    MISS = "miss"          # fetched synchronously
    DEGRADED = "degraded"  # fetch failed, prior value served


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    """Value returned by :meth:`ReadThroughCache.get`.

    Attributes:
        value: The cached or freshly fetched value
        status: How the value was served
        stale: Freshness marker, set for STALE and DEGRADED results
    """

    value: T
    status: CacheStatus
    stale: StaleDataServed | None = None


@dataclass
class CacheEntry:
    """A cached value with its freshness metadata.

    Invariant: ``inserted_at <= fresh_until <= stale_until``.
    """

    key: str
    value: Any
    inserted_at: float
    fresh_until: float
    stale_until: float
    generation: int = 0
    in_flight_refresh: bool = False
    last_access: float = 0.0

    def __post_init__(self) -> None:
        if not self.inserted_at <= self.fresh_until <= self.stale_until:
            raise ContractViolation(
                f"Cache entry '{self.key}' violates inserted_at <= fresh_until <= stale_until"
            )
        if not self.last_access:
            self.last_access = self.inserted_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        # Generations and access times are local to one process.
        for name in ("generation", "in_flight_refresh", "last_access"):
            data.pop(name)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, generation: int = 0) -> CacheEntry:
        return cls(
            key=data["key"],
            value=data["value"],
            inserted_at=data["inserted_at"],
            fresh_until=data["fresh_until"],
            stale_until=data["stale_until"],
            generation=generation,
        )


class ReadThroughCache:
    """Stale-while-revalidate cache composed over limiter, coalescer and breaker.

    Args:
        breaker: Breaker wrapping every upstream fetch
        limiter: Optional admission control; the ``limiter_key`` of a call
            (its cache key by default) is charged one token per upstream
            fetch request
        singleflight: Coalescer; a private one is created if omitted
        store: Optional shared store mirroring entries for other processes
        ttl: Default freshness window in seconds
        stale_grace: Default grace window after ``ttl`` in seconds
        stale_if_error: How long past ``stale_until`` a prior value may be
            served when a fetch fails
        idle_grace: How long past ``stale_until`` an unused entry is kept
        max_entries: LRU bound on local entries
        call_timeout: Timeout for each fetch (defaults to the breaker's)
    """

    def __init__(
        self,
        *,
        breaker: CircuitBreaker,
        limiter: RateLimiter | None = None,
        singleflight: SingleFlight | None = None,
        store: KeyValueStore | None = None,
        ttl: float = 60.0,
        stale_grace: float = 30.0,
        stale_if_error: float = 300.0,
        idle_grace: float = 60.0,
        max_entries: int = 10_000,
        call_timeout: float | None = None,
        key_prefix: str = "bulwark:cache",
        clock: Clock = monotonic,
        metrics: MetricsRecorder | None = None,
    ):
        _check_windows(ttl, stale_grace)
        if stale_if_error < 0:
            raise ContractViolation(f"stale_if_error must be >= 0, got {stale_if_error}")
        if idle_grace < 0:
            raise ContractViolation(f"idle_grace must be >= 0, got {idle_grace}")
        if max_entries <= 0:
            raise ContractViolation(f"max_entries must be positive, got {max_entries}")

        self._breaker = breaker
        self._limiter = limiter
        self._metrics = metrics or MetricsRecorder()
        self._flights = singleflight or SingleFlight(metrics=self._metrics)
        self._store = store
        self.ttl = ttl
        self.stale_grace = stale_grace
        self.stale_if_error = stale_if_error
        self.idle_grace = idle_grace
        self.max_entries = max_entries
        self.call_timeout = call_timeout
        self._prefix = key_prefix
        self._clock = clock

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._generations: dict[str, int] = {}
        self._invalidated_at: dict[str, float] = {}
        self._refreshes: set[asyncio.Task[None]] = set()
        self._sweeper: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> ReadThroughCache:
        """Build from a :class:`~bulwark.core.settings.CacheConfig`."""
        return cls(
            ttl=config.ttl_seconds,
            stale_grace=config.stale_grace_seconds,
            stale_if_error=config.stale_if_error_seconds,
            idle_grace=config.idle_grace_seconds,
            max_entries=config.max_entries,
            **kwargs,
        )

    # ── Public API ──────────────────────────────────────────────────────

    async def get(
        self,
        key: str,
        fetch: Fetch,
        *,
        ttl: float | None = None,
        stale_grace: float | None = None,
        limiter_key: str | None = None,
    ) -> CacheResult[Any]:
        """Return the value for ``key``, fetching it through the stack if needed.

        Raises:
            RateLimitExceeded, CircuitOpenError, TimeoutExpired, or the
            fetch's own error, when no prior value can be served instead.
        """
        with LogContext(cache_key=key):
            return await self._get(key, fetch, ttl, stale_grace, limiter_key)

    async def _get(
        self,
        key: str,
        fetch: Fetch,
        ttl: float | None,
        stale_grace: float | None,
        limiter_key: str | None,
    ) -> CacheResult[Any]:
        ttl = self.ttl if ttl is None else ttl
        stale_grace = self.stale_grace if stale_grace is None else stale_grace
        _check_windows(ttl, stale_grace)

        now = self._clock()
        generation = self._generations.get(key, 0)
        entry = self._local_entry(key, generation)
        if entry is None and self._store is not None:
            entry = await self._shared_entry(key, generation)
            now = self._clock()

        if entry is not None:
            entry.last_access = now
            if now < entry.fresh_until:
                self._metrics.record("cache_requests_total", result=CacheStatus.FRESH.value)
                return CacheResult(entry.value, CacheStatus.FRESH)
            if now < entry.stale_until:
                self._metrics.record("cache_requests_total", result=CacheStatus.STALE.value)
                if not entry.in_flight_refresh:
                    self._schedule_refresh(entry, fetch, ttl, stale_grace, limiter_key)
                return CacheResult(
                    entry.value,
                    CacheStatus.STALE,
                    StaleDataServed(age_seconds=now - entry.inserted_at),
                )

        try:
            value = await self._fetch(key, generation, fetch, ttl, stale_grace, limiter_key)
        except Exception as exc:
            prior = self._local_entry(key, generation)
            now = self._clock()
            if prior is not None and now < prior.stale_until + self.stale_if_error:
                self._metrics.record("cache_requests_total", result=CacheStatus.DEGRADED.value)
                logger.warning(
                    "cache.serving_degraded",
                    cache_key=key,
                    error=repr(exc),
                    age_seconds=round(now - prior.inserted_at, 3),
                )
                return CacheResult(
                    prior.value,
                    CacheStatus.DEGRADED,
                    StaleDataServed(
                        age_seconds=now - prior.inserted_at,
                        reason=type(exc).__name__,
                    ),
                )
            raise

        self._metrics.record("cache_requests_total", result=CacheStatus.MISS.value)
        return CacheResult(value, CacheStatus.MISS)

    async def invalidate(self, key: str) -> None:
        """Remove freshness for ``key``; the next ``get`` misses.

        A fetch already in flight still completes for the callers waiting
        on it, but its result is not stored.
        """
        self._generations[key] = self._generations.get(key, 0) + 1
        self._entries.pop(key, None)
        if self._store is not None:
            self._invalidated_at[key] = self._clock()
            await self._store.delete(self._store_key(key))
        logger.debug("cache.invalidated", cache_key=key, generation=self._generations[key])

    def peek(self, key: str) -> CacheEntry | None:
        """The current local entry for ``key``, without touching LRU order."""
        entry = self._entries.get(key)
        if entry is None or entry.generation != self._generations.get(key, 0):
            return None
        return entry

    def sweep(self) -> int:
        """Evict entries unused past their retention horizon.

        Entries with a refresh or fetch in flight are never evicted.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        horizon = max(self.idle_grace, self.stale_if_error)
        removed = 0
        for key, entry in list(self._entries.items()):
            if entry.in_flight_refresh or self._is_fetching(key):
                continue
            if now >= entry.stale_until + horizon:
                del self._entries[key]
                removed += 1
        if removed:
            logger.debug("cache.swept", removed=removed)
        return removed

    def start_sweeper(self, interval: float) -> None:
        """Run :meth:`sweep` every ``interval`` seconds in the background."""
        if interval <= 0:
            raise ContractViolation(f"sweep interval must be positive, got {interval}")
        if self._sweeper is not None and not self._sweeper.done():
            return

        async def loop() -> None:
            while True:
                await asyncio.sleep(interval)
                self.sweep()

        self._sweeper = asyncio.ensure_future(loop())

    async def wait_for_refreshes(self) -> None:
        """Wait until every background refresh scheduled so far has settled."""
        while self._refreshes:
            await asyncio.gather(*list(self._refreshes), return_exceptions=True)

    async def aclose(self) -> None:
        """Stop the sweeper and wait for background refreshes."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.wait_for_refreshes()

    def __len__(self) -> int:
        return len(self._entries)

    # ── Internals ───────────────────────────────────────────────────────

    def _store_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _flight_key(self, key: str, generation: int) -> str:
        return f"{key}#{generation}"

    def _is_fetching(self, key: str) -> bool:
        return self._flights.in_flight(self._flight_key(key, self._generations.get(key, 0)))

    def _local_entry(self, key: str, generation: int) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.generation != generation:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry

    async def _shared_entry(self, key: str, generation: int) -> CacheEntry | None:
        assert self._store is not None
        raw = await self._store.get(self._store_key(key))
        if raw is None or self._generations.get(key, 0) != generation:
            return None
        invalidated_at = self._invalidated_at.get(key)
        if invalidated_at is not None and raw["inserted_at"] <= invalidated_at:
            logger.debug("cache.rejected_shared_row", cache_key=key, inserted_at=raw["inserted_at"])
            return None
        entry = CacheEntry.from_dict(raw, generation=generation)
        self._install(entry)
        return entry

    def _install(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        if len(self._entries) <= self.max_entries:
            return
        for key, candidate in list(self._entries.items()):
            if len(self._entries) <= self.max_entries:
                break
            if candidate is entry or candidate.in_flight_refresh or self._is_fetching(key):
                continue
            del self._entries[key]
            logger.debug("cache.evicted", cache_key=key)

    def _admit(self, key: str, limiter_key: str | None) -> None:
        if self._limiter is not None:
            self._limiter.acquire_or_raise(limiter_key or key)

    async def _fetch(
        self,
        key: str,
        generation: int,
        fetch: Fetch,
        ttl: float,
        stale_grace: float,
        limiter_key: str | None,
    ) -> Any:
        async def produce() -> Any:
            # Only the caller that starts the upstream call is charged.
            self._admit(key, limiter_key)
            value = await self._breaker.execute(fetch, timeout=self.call_timeout)
            await self._store_value(key, generation, value, ttl, stale_grace)
            return value

        return await self._flights.dedupe(self._flight_key(key, generation), produce)

    async def _store_value(
        self, key: str, generation: int, value: Any, ttl: float, stale_grace: float
    ) -> None:
        if self._generations.get(key, 0) != generation:
            logger.debug("cache.discarded_superseded", cache_key=key, generation=generation)
            return
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            inserted_at=now,
            fresh_until=now + ttl,
            stale_until=now + ttl + stale_grace,
            generation=generation,
        )
        self._install(entry)
        if self._store is not None:
            store_key = self._store_key(key)
            await self._store.put(
                store_key,
                entry.to_dict(),
                ttl_seconds=ttl + stale_grace + self.stale_if_error,
            )
            if self._generations.get(key, 0) != generation:
                # invalidate() ran while the write was pending; its delete landed first.
                await self._store.delete(store_key)
                logger.debug("cache.retracted_superseded", cache_key=key, generation=generation)

    def _schedule_refresh(
        self,
        entry: CacheEntry,
        fetch: Fetch,
        ttl: float,
        stale_grace: float,
        limiter_key: str | None,
    ) -> None:
        entry.in_flight_refresh = True
        task = asyncio.ensure_future(self._refresh(entry, fetch, ttl, stale_grace, limiter_key))
        self._refreshes.add(task)
        task.add_done_callback(self._refreshes.discard)

    async def _refresh(
        self,
        entry: CacheEntry,
        fetch: Fetch,
        ttl: float,
        stale_grace: float,
        limiter_key: str | None,
    ) -> None:
        try:
            await self._fetch(entry.key, entry.generation, fetch, ttl, stale_grace, limiter_key)
        except Exception as exc:
            self._metrics.record("cache_refreshes_total", outcome="failure")
            if entry.generation == self._generations.get(entry.key, 0):
                # Keep serving the old value, but never past the stale-if-error horizon.
                horizon = entry.fresh_until + stale_grace + self.stale_if_error
                entry.stale_until = min(entry.stale_until + stale_grace, max(horizon, entry.stale_until))
            level = logger.debug if isinstance(exc, RateLimitExceeded) else logger.warning
            level(
                "cache.refresh_failed",
                cache_key=entry.key,
                error=repr(exc),
                stale_until=entry.stale_until,
            )
        else:
            self._metrics.record("cache_refreshes_total", outcome="success")
        finally:
            entry.in_flight_refresh = False


def _check_windows(ttl: float, stale_grace: float) -> None:
    if ttl <= 0:
        raise ContractViolation(f"ttl must be positive, got {ttl}")
    if stale_grace < 0:
        raise ContractViolation(f"stale_grace must be >= 0, got {stale_grace}")


__all__ = [
    "CacheEntry",
    "CacheResult",
    "CacheStatus",
    "ReadThroughCache",
]

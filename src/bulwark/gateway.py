"""Gateway façade wiring every resilience component from settings.

One ``Gateway`` is built at startup and passed to call sites; tests build
a fresh one each. Nothing here is a module-level singleton.

Example::

    gateway = Gateway.from_settings(load_settings())
    gateway.start()

    profile = await gateway.get("user:42", lambda: api.profile(42), upstream="profiles")
    receipt = await gateway.execute("pay-7f3a", lambda: api.charge(order), upstream="billing")

    await gateway.aclose()
"""

from __future__ import annotations

from typing import Any

from bulwark.core.clock import Clock, monotonic, wall
from bulwark.core.logging import get_logger
from bulwark.core.settings import GatewaySettings, StoreBackend
from bulwark.core.stores import InMemoryStore, KeyValueStore, RedisStore
from bulwark.execution.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from bulwark.execution.idempotency import IdempotentExecutor, Operation
from bulwark.execution.rate_limit import Admission, RateLimiter
from bulwark.execution.read_through import CacheResult, Fetch, ReadThroughCache
from bulwark.execution.retry import RetryPolicy
from bulwark.observability.metrics import MetricsRecorder

logger = get_logger(__name__)


class Gateway:
    """Limiter, breakers, caches and the idempotent executor behind one handle.

    Each upstream gets its own breaker (from the registry) and its own
    read-through cache; the limiter, store and metrics are shared.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        store: KeyValueStore,
        metrics: MetricsRecorder | None = None,
        clock: Clock = monotonic,
        wall_clock: Clock = wall,
    ):
        self.settings = settings
        self.store = store
        self.metrics = metrics or MetricsRecorder()
        self._clock = clock
        self._wall_clock = wall_clock
        self._sweeping = False

        self.limiter = RateLimiter.from_config(settings.limiter, clock=clock, metrics=self.metrics)
        self.breakers = CircuitBreakerRegistry(
            lambda name: CircuitBreaker.from_config(
                name, settings.breaker, clock=clock, metrics=self.metrics
            )
        )
        self.retry_policy = RetryPolicy.from_config(settings.retry)
        self.executor = IdempotentExecutor.from_config(
            store,
            settings.idempotency,
            policy=self.retry_policy,
            key_prefix=f"{settings.key_prefix}:idem",
            clock=wall_clock,
            metrics=self.metrics,
        )
        self._caches: dict[str, ReadThroughCache] = {}

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings | None = None,
        *,
        store: KeyValueStore | None = None,
        **kwargs: Any,
    ) -> Gateway:
        """Build a gateway, creating the store named by ``store_backend``."""
        settings = settings or GatewaySettings()
        if store is None:
            if settings.store_backend == StoreBackend.REDIS:
                store = RedisStore(settings.redis_url)
            else:
                store = InMemoryStore(clock=kwargs.get("wall_clock", wall))
        logger.info(
            "gateway.created",
            store_backend=settings.store_backend.value,
            key_prefix=settings.key_prefix,
        )
        return cls(settings, store=store, **kwargs)

    # ── Components ──────────────────────────────────────────────────────

    def breaker(self, upstream: str = "default") -> CircuitBreaker:
        return self.breakers.get_or_create(upstream)

    def cache(self, upstream: str = "default") -> ReadThroughCache:
        """The read-through cache in front of ``upstream``, created on first use."""
        cache = self._caches.get(upstream)
        if cache is None:
            shared = self.store if self.settings.store_backend == StoreBackend.REDIS else None
            cache = ReadThroughCache.from_config(
                self.settings.cache,
                breaker=self.breaker(upstream),
                limiter=self.limiter,
                store=shared,
                key_prefix=f"{self.settings.key_prefix}:cache:{upstream}",
                clock=self._wall_clock if shared is not None else self._clock,
                metrics=self.metrics,
            )
            self._caches[upstream] = cache
            if self._sweeping:
                cache.start_sweeper(self.settings.cache.sweep_interval_seconds)
        return cache

    # ── Operations ──────────────────────────────────────────────────────

    def admit(self, key: str, cost: int = 1) -> Admission:
        return self.limiter.try_acquire(key, cost)

    async def get(
        self,
        key: str,
        fetch: Fetch,
        *,
        upstream: str = "default",
        ttl: float | None = None,
        stale_grace: float | None = None,
        limiter_key: str | None = None,
    ) -> CacheResult[Any]:
        """Read ``key`` through the cache in front of ``upstream``."""
        return await self.cache(upstream).get(
            key, fetch, ttl=ttl, stale_grace=stale_grace, limiter_key=limiter_key
        )

    async def invalidate(self, key: str, *, upstream: str = "default") -> None:
        await self.cache(upstream).invalidate(key)

    async def execute(
        self,
        idempotency_key: str,
        operation: Operation,
        *,
        upstream: str = "default",
        policy: RetryPolicy | None = None,
    ) -> Any:
        """Run a side-effecting operation at most once per idempotency key."""
        return await self.executor.execute(
            idempotency_key, operation, policy, breaker=self.breaker(upstream)
        )

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Start background sweeping; needs a running event loop."""
        self._sweeping = True
        for cache in self._caches.values():
            cache.start_sweeper(self.settings.cache.sweep_interval_seconds)

    async def aclose(self) -> None:
        """Stop sweepers, drain background refreshes and close the store."""
        self._sweeping = False
        for cache in self._caches.values():
            await cache.aclose()
        if isinstance(self.store, RedisStore):
            await self.store.aclose()
        logger.info("gateway.closed")


__all__ = ["Gateway"]

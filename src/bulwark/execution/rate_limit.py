"""Rate Limiting: token-bucket admission control per caller identity.

Manifesto:
Admission is decided before any work is done, and never by waiting:
``try_acquire`` answers immediately with a retry hint so the caller can
emit a 429 with ``Retry-After`` instead of holding a connection open.

ARCHITECTURE
────────────
::

    TokenBucket               ─ one bucket, lazy refill, own lock
    RateLimiter               ─ per-key buckets (LRU) + optional global bucket
    RedisTokenBucketLimiter   ─ same decision against a shared Redis store

    Admission(allowed, retry_after_ms, scope)

    A request must pass BOTH its key bucket and the global bucket.
    Locks are always taken key → global, and tokens are only consumed
    when both buckets admit.

Refill is computed at acquisition time::

    tokens = min(capacity, tokens + elapsed * refill_rate)
    retry_after_ms = ceil((cost - tokens) / refill_rate * 1000)

Example::

    limiter = RateLimiter(capacity=5, refill_rate_per_second=5)
    admission = limiter.try_acquire("203.0.113.7")
    if not admission.allowed:
        return 429, {"Retry-After": admission.retry_after_ms / 1000}

Tags:
    bulwark, execution, rate-limit, throttle, token-bucket
"""

from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from bulwark.core.clock import Clock, monotonic
from bulwark.core.errors import ContractViolation, RateLimitExceeded
from bulwark.core.logging import get_logger
from bulwark.observability.metrics import MetricsRecorder

logger = get_logger(__name__)

GLOBAL_SCOPE = "global"
KEY_SCOPE = "key"

# Float slack so that waiting exactly retry_after_ms is always enough.
_TOLERANCE = 1e-9


@dataclass(frozen=True)
class Admission:
    """Result of an admission check.

    Attributes:
        allowed: Whether the request may proceed
        retry_after_ms: Milliseconds until the same request would be admitted (0 if allowed)
        scope: Which bucket denied the request (``"key"`` or ``"global"``), None if allowed
    """

    allowed: bool
    retry_after_ms: int = 0
    scope: str | None = None


class TokenBucket:
    """A single token bucket.

    Starts full. Tokens only increase through refill proportional to
    elapsed time and only decrease through successful admission, so
    ``0 <= tokens <= capacity`` at every observation point.

    Attributes:
        key: Identity the bucket belongs to
        capacity: Maximum tokens (burst size)
        refill_rate_per_second: Tokens added per second
    """

    def __init__(
        self,
        capacity: int,
        refill_rate_per_second: float,
        *,
        key: str = "",
        clock: Clock = monotonic,
    ):
        if capacity <= 0:
            raise ContractViolation(f"Bucket capacity must be positive, got {capacity}")
        if refill_rate_per_second <= 0:
            raise ContractViolation(
                f"Bucket refill rate must be positive, got {refill_rate_per_second}"
            )
        self.key = key
        self.capacity = capacity
        self.refill_rate_per_second = float(refill_rate_per_second)
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self.lock = threading.Lock()

    # The *_locked helpers require ``self.lock`` to be held.

    def refill_locked(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_rate_per_second)
        self._last_refill = now

    def wait_ms_locked(self, cost: int) -> int:
        if self._tokens + _TOLERANCE >= cost:
            return 0
        return math.ceil((cost - self._tokens) / self.refill_rate_per_second * 1000)

    def consume_locked(self, cost: int) -> None:
        self._tokens = max(0.0, self._tokens - cost)

    def check_cost(self, cost: int) -> None:
        if cost <= 0:
            raise ContractViolation(f"Token cost must be positive, got {cost}")
        if cost > self.capacity:
            raise ContractViolation(
                f"Token cost {cost} exceeds bucket capacity {self.capacity} and can never be admitted"
            )

    def try_acquire(self, cost: int = 1) -> Admission:
        """Attempt to take ``cost`` tokens without waiting."""
        self.check_cost(cost)
        with self.lock:
            self.refill_locked()
            wait_ms = self.wait_ms_locked(cost)
            if wait_ms == 0:
                self.consume_locked(cost)
                return Admission(allowed=True)
            return Admission(allowed=False, retry_after_ms=wait_ms, scope=KEY_SCOPE)

    @property
    def tokens(self) -> float:
        """Current available tokens (after refill)."""
        with self.lock:
            self.refill_locked()
            return self._tokens

    @property
    def last_refill(self) -> float:
        with self.lock:
            return self._last_refill


class RateLimiter:
    """Per-key token buckets with an optional global bucket on top.

    Buckets are created lazily on first request for a key. Idle buckets are
    evicted least-recently-used once ``max_keys`` is exceeded.

    Example:
        >>> limiter = RateLimiter(capacity=5, refill_rate_per_second=5)
        >>> limiter.try_acquire("user-123").allowed
        True
    """

    def __init__(
        self,
        capacity: int,
        refill_rate_per_second: float,
        *,
        global_capacity: int | None = None,
        global_refill_rate_per_second: float | None = None,
        max_keys: int = 10_000,
        clock: Clock = monotonic,
        metrics: MetricsRecorder | None = None,
    ):
        if capacity <= 0:
            raise ContractViolation(f"Bucket capacity must be positive, got {capacity}")
        if refill_rate_per_second <= 0:
            raise ContractViolation(
                f"Bucket refill rate must be positive, got {refill_rate_per_second}"
            )
        if max_keys <= 0:
            raise ContractViolation(f"max_keys must be positive, got {max_keys}")
        if (global_capacity is None) != (global_refill_rate_per_second is None):
            raise ContractViolation(
                "global_capacity and global_refill_rate_per_second must be set together"
            )

        self.capacity = capacity
        self.refill_rate_per_second = refill_rate_per_second
        self.max_keys = max_keys
        self._clock = clock
        self._metrics = metrics or MetricsRecorder()
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()
        self._registry_lock = threading.Lock()
        self._global: TokenBucket | None = None
        if global_capacity is not None and global_refill_rate_per_second is not None:
            self._global = TokenBucket(
                global_capacity, global_refill_rate_per_second, key=GLOBAL_SCOPE, clock=clock
            )

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> RateLimiter:
        """Build from a :class:`~bulwark.core.settings.LimiterConfig`."""
        return cls(
            config.capacity,
            config.refill_rate_per_second,
            global_capacity=config.global_capacity,
            global_refill_rate_per_second=config.global_refill_rate_per_second,
            max_keys=config.max_keys,
            **kwargs,
        )

    def _bucket(self, key: str) -> TokenBucket:
        """Get or create the bucket for ``key``, marking it recently used."""
        with self._registry_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(
                    self.capacity, self.refill_rate_per_second, key=key, clock=self._clock
                )
                self._buckets[key] = bucket
                while len(self._buckets) > self.max_keys:
                    evicted, _ = self._buckets.popitem(last=False)
                    logger.debug("limiter.bucket_evicted", key=evicted)
            else:
                self._buckets.move_to_end(key)
            return bucket

    def try_acquire(self, key: str, cost: int = 1) -> Admission:
        """Admit or deny a request of ``cost`` tokens for ``key``.

        Never suspends. Tokens are only taken when every applicable bucket
        admits the request.
        """
        if cost <= 0 or cost > self.capacity:
            raise ContractViolation(
                f"Token cost must be in 1..{self.capacity}, got {cost}"
            )
        if self._global is not None:
            self._global.check_cost(cost)
        bucket = self._bucket(key)

        with bucket.lock:
            bucket.refill_locked()
            key_wait = bucket.wait_ms_locked(cost)
            if self._global is None:
                if key_wait == 0:
                    bucket.consume_locked(cost)
                admission = self._decide(key_wait, 0)
            else:
                with self._global.lock:
                    self._global.refill_locked()
                    global_wait = self._global.wait_ms_locked(cost)
                    if key_wait == 0 and global_wait == 0:
                        bucket.consume_locked(cost)
                        self._global.consume_locked(cost)
                    admission = self._decide(key_wait, global_wait)

        self._metrics.record(
            "limiter_decisions_total",
            allowed=admission.allowed,
            scope=admission.scope or "none",
        )
        if not admission.allowed:
            logger.debug(
                "limiter.rejected",
                key=key,
                cost=cost,
                scope=admission.scope,
                retry_after_ms=admission.retry_after_ms,
            )
        return admission

    @staticmethod
    def _decide(key_wait: int, global_wait: int) -> Admission:
        if key_wait == 0 and global_wait == 0:
            return Admission(allowed=True)
        scope = GLOBAL_SCOPE if global_wait > key_wait else KEY_SCOPE
        return Admission(allowed=False, retry_after_ms=max(key_wait, global_wait), scope=scope)

    def acquire_or_raise(self, key: str, cost: int = 1) -> None:
        """Like :meth:`try_acquire` but raises :class:`RateLimitExceeded` on denial."""
        admission = self.try_acquire(key, cost)
        if not admission.allowed:
            raise RateLimitExceeded(
                f"Rate limit exceeded for '{key}'",
                retry_after_ms=admission.retry_after_ms,
                scope=admission.scope or KEY_SCOPE,
            ).with_context(key=key)

    def get(self, key: str) -> TokenBucket | None:
        """Get the bucket for ``key`` if one exists."""
        with self._registry_lock:
            return self._buckets.get(key)

    def remove(self, key: str) -> None:
        """Drop the bucket for ``key``."""
        with self._registry_lock:
            self._buckets.pop(key, None)

    @property
    def global_bucket(self) -> TokenBucket | None:
        return self._global

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._buckets)


# Refill, check and consume in one round trip. KEYS[1] = bucket hash.
# ARGV: capacity, refill rate/s, now (s), cost, ttl (ms)
_TOKEN_BUCKET_LUA = """
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
  tokens = capacity
  ts = now
end

local elapsed = math.max(0, now - ts)
tokens = math.min(capacity, tokens + elapsed * rate)

local allowed = 0
local wait_ms = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  wait_ms = math.ceil((cost - tokens) / rate * 1000)
end

redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('PEXPIRE', KEYS[1], ttl)
return {allowed, wait_ms}
"""


class RedisTokenBucketLimiter:
    """Token bucket whose state lives in Redis, shared by every process.

    The refill/check/consume sequence runs as a single Lua script, so it is
    atomic across processes. Unlike :class:`RateLimiter` it performs I/O
    and therefore ``try_acquire`` is a coroutine.

    Requires the ``redis`` package (``pip install bulwark[redis]``).
    """

    def __init__(
        self,
        capacity: int,
        refill_rate_per_second: float,
        *,
        url: str = "redis://localhost:6379/0",
        client: Any = None,
        key_prefix: str = "bulwark:bucket",
        clock: Clock = time.time,
        metrics: MetricsRecorder | None = None,
    ):
        if capacity <= 0:
            raise ContractViolation(f"Bucket capacity must be positive, got {capacity}")
        if refill_rate_per_second <= 0:
            raise ContractViolation(
                f"Bucket refill rate must be positive, got {refill_rate_per_second}"
            )
        if client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError as exc:
                raise ImportError(
                    "RedisTokenBucketLimiter requires the 'redis' package. "
                    "Install with: pip install bulwark[redis]"
                ) from exc
            client = aioredis.from_url(url)
        self.capacity = capacity
        self.refill_rate_per_second = refill_rate_per_second
        self._client = client
        self._prefix = key_prefix
        self._clock = clock
        self._metrics = metrics or MetricsRecorder()
        self._script = client.register_script(_TOKEN_BUCKET_LUA)
        # Keep idle buckets around for twice the time a full refill takes.
        self._ttl_ms = max(1000, math.ceil(capacity / refill_rate_per_second * 2000))

    async def try_acquire(self, key: str, cost: int = 1) -> Admission:
        if cost <= 0 or cost > self.capacity:
            raise ContractViolation(
                f"Token cost must be in 1..{self.capacity}, got {cost}"
            )
        allowed, wait_ms = await self._script(
            keys=[f"{self._prefix}:{key}"],
            args=[self.capacity, self.refill_rate_per_second, self._clock(), cost, self._ttl_ms],
        )
        if int(allowed) == 1:
            admission = Admission(allowed=True)
        else:
            admission = Admission(allowed=False, retry_after_ms=int(wait_ms), scope=KEY_SCOPE)
        self._metrics.record(
            "limiter_decisions_total",
            allowed=admission.allowed,
            scope=admission.scope or "none",
        )
        return admission


__all__ = [
    "Admission",
    "TokenBucket",
    "RateLimiter",
    "RedisTokenBucketLimiter",
]

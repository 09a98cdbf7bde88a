"""
Key-value store abstraction for cache entries and idempotency records.

The gateway only needs ``get``/``put``/``delete`` with TTL, plus one atomic
primitive, ``put_if_absent``, used to claim an idempotency key. Anything
that offers those can hold the shared state of a multi-process deployment.

Architecture:
    ::

        KeyValueStore (Protocol, async)
        ├── InMemoryStore: single process, bounded LRU, TTL
        └── RedisStore: shared across processes (SET NX PX)

        API: get(key) → value | None
             put(key, value, ttl_seconds=None)
             put_if_absent(key, value, ttl_seconds=None) → bool
             delete(key)

Guardrails:
    ❌ DON'T: Use InMemoryStore when idempotency must survive a process
    ✅ DO: Use RedisStore for cross-process idempotency

    ❌ DON'T: Store values that are not JSON-serializable in RedisStore
    ✅ DO: Keep records as plain dicts (``to_dict()``/``from_dict()``)

Tags:
    cache, store, redis, in-memory, ttl, bulwark
"""

from __future__ import annotations

import json
import threading
from collections import OrderedDict
from typing import Any, Protocol, runtime_checkable

from .clock import Clock, wall
from .errors import ContractViolation


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol for backing stores.

    Implementations:
        - :class:`InMemoryStore`: single-process, bounded LRU store
        - :class:`RedisStore`: distributed, Redis-backed store
    """

    async def get(self, key: str) -> Any | None:
        """Return the stored value, or ``None`` if missing or expired."""
        ...

    async def put(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        """Store a value, replacing any existing one."""
        ...

    async def put_if_absent(
        self, key: str, value: Any, *, ttl_seconds: float | None = None
    ) -> bool:
        """Atomically store a value only if the key is absent.

        Returns:
            ``True`` if the value was stored, ``False`` if the key existed.
        """
        ...

    async def delete(self, key: str) -> None:
        """Remove a key. No-op if it does not exist."""
        ...


# ------------------------------------------------------------------ #
# In-Memory Store
# ------------------------------------------------------------------ #


class InMemoryStore:
    """Bounded in-memory store with TTL support.

    Uses LRU eviction when ``max_size`` is reached. Operations never
    suspend and are guarded by a lock, so the store is safe to share
    between threads and tasks of one process.

    Example:
        store = InMemoryStore(max_size=500)
        await store.put("session:abc", {"user_id": 42}, ttl_seconds=3600)
        session = await store.get("session:abc")
    """

    def __init__(self, *, max_size: int = 100_000, clock: Clock = wall):
        if max_size <= 0:
            raise ContractViolation(f"max_size must be positive, got {max_size}")
        self._store: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()
        self._max_size = max_size
        self._clock = clock
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> tuple[Any, float | None] | None:
        item = self._store.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and now >= expires_at:
            del self._store[key]
            return None
        return item

    def _write(self, key: str, value: Any, ttl_seconds: float | None, now: float) -> None:
        expires_at = now + ttl_seconds if ttl_seconds is not None else None
        if key not in self._store and len(self._store) >= self._max_size:
            self._store.popitem(last=False)
        self._store[key] = (value, expires_at)
        self._store.move_to_end(key)

    async def get(self, key: str) -> Any | None:
        with self._lock:
            item = self._live(key, self._clock())
            if item is None:
                return None
            self._store.move_to_end(key)
            return item[0]

    async def put(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        with self._lock:
            self._write(key, value, ttl_seconds, self._clock())

    async def put_if_absent(
        self, key: str, value: Any, *, ttl_seconds: float | None = None
    ) -> bool:
        with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._write(key, value, ttl_seconds, now)
            return True

    async def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def size(self) -> int:
        """Return current number of stored keys (expired ones included)."""
        with self._lock:
            return len(self._store)


# ------------------------------------------------------------------ #
# Redis Store
# ------------------------------------------------------------------ #


def _ttl_ms(ttl_seconds: float | None) -> int | None:
    if ttl_seconds is None:
        return None
    return max(1, int(ttl_seconds * 1000))


class RedisStore:
    """Redis-backed shared store.

    Requires the ``redis`` package (``pip install bulwark[redis]``).
    Values are JSON-encoded; ``put_if_absent`` maps to ``SET NX PX``.

    Example:
        store = RedisStore("redis://localhost:6379/0")
        claimed = await store.put_if_absent("idem:pay-1", record, ttl_seconds=300)
    """

    def __init__(self, url: str = "redis://localhost:6379/0", *, client: Any = None):
        if client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError as exc:
                raise ImportError(
                    "RedisStore requires the 'redis' package. "
                    "Install with: pip install bulwark[redis]"
                ) from exc
            client = aioredis.from_url(url, decode_responses=False)
        self._client = client

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def put(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        await self._client.set(key, json.dumps(value), px=_ttl_ms(ttl_seconds))

    async def put_if_absent(
        self, key: str, value: Any, *, ttl_seconds: float | None = None
    ) -> bool:
        stored = await self._client.set(key, json.dumps(value), px=_ttl_ms(ttl_seconds), nx=True)
        return bool(stored)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()


__all__ = [
    "KeyValueStore",
    "InMemoryStore",
    "RedisStore",
]

"""Bulwark execution: the resilience components.

ARCHITECTURE
────────────
::

    ReadThroughCache.get(key, fetch)
      │
      ├── fresh / stale hit ──► cached value
      └── miss ──► RateLimiter ─► SingleFlight ─► CircuitBreaker ─► fetch
                                                     └── timeout

    IdempotentExecutor.execute(key, op)
      └── claim record ─► run_with_retry(CircuitBreaker(op)) ─► finalize
"""

"""Idempotent retry orchestrator.

Runs a side-effecting operation at most once per idempotency key, with
retries, and replays the stored outcome to every later caller.

Manifesto:
    A payment retried by a flaky client must not charge twice. The first
    caller claims the key, every concurrent caller joins the claim, and
    every later caller gets the recorded result back without the operation
    running again, until the record expires.

Architecture:
    ::

        execute(key, operation)
          │
          ├── SingleFlight(key)          in-process join
          │
          └── store record for key
                ├── COMPLETED ──► replay result
                ├── FAILED ─────► raise OperationFailed
                ├── IN_PROGRESS ► poll until settled (another process)
                └── absent ─────► put_if_absent(IN_PROGRESS, ttl=lease)
                                    │
                                    ├── heartbeat renews the lease
                                    ├── run_with_retry(breaker.execute(op))
                                    └── finalize (ttl=retention)

    Correctness across processes rests on the store's atomic
    ``put_if_absent``; the in-process join only avoids polling. A crashed
    owner stops renewing its lease, the IN_PROGRESS record expires, and
    the next caller takes the key over.

Guardrails:
    ❌ DON'T: Return values that are not JSON-serializable from the operation
    ✅ DO: Return plain dicts/lists/scalars; they are stored and replayed

    ❌ DON'T: Reuse a key after a permanent failure expecting a new attempt
    ✅ DO: Use a new key, or ``clear(key)`` once the cause is fixed

Tags:
    idempotency, retry, exactly-once, lease, bulwark
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from bulwark.core.clock import Clock, monotonic, wall
from bulwark.core.errors import (
    ContractViolation,
    IdempotencyConflict,
    OperationFailed,
    RetryExhausted,
)
from bulwark.core.logging import LogContext, get_logger
from bulwark.core.stores import KeyValueStore
from bulwark.execution.circuit_breaker import CircuitBreaker
from bulwark.execution.retry import ADMISSION_ERRORS, RetryPolicy, run_with_retry
from bulwark.execution.singleflight import SingleFlight
from bulwark.observability.metrics import MetricsRecorder

logger = get_logger(__name__)

Operation = Callable[[], Awaitable[Any]]


class IdempotencyStatus(str, Enum):
    """Lifecycle of an idempotency record."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IdempotencyRecord:
    """Stored outcome of one idempotent operation.

    Attributes:
        idempotency_key: Caller-supplied key
        status: Current lifecycle status
        created_at: Wall-clock time the key was claimed
        expires_at: Wall-clock time the record stops being honoured
        owner: Token of the executor run holding the claim
        result: Stored result (COMPLETED only)
        result_hash: SHA-256 of the result's canonical JSON (COMPLETED only)
        attempts: Attempts made by the owning run
        error: ``{"type", "message", "reason"}`` (FAILED only)
    """

    idempotency_key: str
    status: IdempotencyStatus
    created_at: float
    expires_at: float
    owner: str = ""
    result: Any = None
    result_hash: str | None = None
    attempts: int = 0
    error: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IdempotencyRecord:
        return cls(
            idempotency_key=data["idempotency_key"],
            status=IdempotencyStatus(data["status"]),
            created_at=data["created_at"],
            expires_at=data["expires_at"],
            owner=data.get("owner", ""),
            result=data.get("result"),
            result_hash=data.get("result_hash"),
            attempts=data.get("attempts", 0),
            error=data.get("error"),
        )

    @property
    def is_final(self) -> bool:
        return self.status != IdempotencyStatus.IN_PROGRESS

    def failure(self) -> OperationFailed:
        """Rebuild the terminal error of a FAILED record."""
        error = self.error or {}
        return OperationFailed(
            error.get("message", "Operation failed"),
            idempotency_key=self.idempotency_key,
            attempts=self.attempts,
            reason=error.get("reason", "non_retryable"),
            error_type=error.get("type", "Exception"),
        )


def canonical_json(value: Any) -> str:
    """Deterministic JSON used for storage and hashing."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def result_hash(value: Any) -> str:
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


@dataclass
class _Claim:
    record: IdempotencyRecord
    heartbeat: asyncio.Task[None] | None = field(default=None, repr=False)


class IdempotentExecutor:
    """Executes operations at most once per idempotency key.

    Args:
        store: Shared record store; use a RedisStore for cross-process use
        breaker: Breaker every attempt goes through (optional)
        policy: Default retry policy
        retention_seconds: How long finalized records are honoured
        lease_seconds: Lifetime of an unrenewed IN_PROGRESS claim
        poll_interval_ms: Poll period while another process holds the key
        wait_timeout_seconds: Give up waiting on a foreign claim after this
        key_prefix: Namespace for store keys
        clock: Wall clock stamped on records
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        breaker: CircuitBreaker | None = None,
        policy: RetryPolicy | None = None,
        retention_seconds: float = 86_400.0,
        lease_seconds: float = 300.0,
        poll_interval_ms: int = 50,
        wait_timeout_seconds: float = 60.0,
        key_prefix: str = "bulwark:idem",
        clock: Clock = wall,
        metrics: MetricsRecorder | None = None,
    ):
        if retention_seconds <= 0:
            raise ContractViolation(f"retention_seconds must be positive, got {retention_seconds}")
        if lease_seconds <= 0:
            raise ContractViolation(f"lease_seconds must be positive, got {lease_seconds}")
        if lease_seconds > retention_seconds:
            raise ContractViolation("lease_seconds must not exceed retention_seconds")
        if poll_interval_ms <= 0:
            raise ContractViolation(f"poll_interval_ms must be positive, got {poll_interval_ms}")
        if wait_timeout_seconds <= 0:
            raise ContractViolation(
                f"wait_timeout_seconds must be positive, got {wait_timeout_seconds}"
            )

        self._store = store
        self._breaker = breaker
        self._policy = policy or RetryPolicy()
        self.retention_seconds = retention_seconds
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval_ms / 1000
        self.wait_timeout_seconds = wait_timeout_seconds
        self._prefix = key_prefix
        self._clock = clock
        self._metrics = metrics or MetricsRecorder()
        self._flights = SingleFlight(metrics=self._metrics)

    @classmethod
    def from_config(cls, store: KeyValueStore, config: Any, **kwargs: Any) -> IdempotentExecutor:
        """Build from an :class:`~bulwark.core.settings.IdempotencyConfig`."""
        return cls(
            store,
            retention_seconds=config.retention_seconds,
            lease_seconds=config.lease_seconds,
            poll_interval_ms=config.poll_interval_ms,
            wait_timeout_seconds=config.wait_timeout_seconds,
            **kwargs,
        )

    # ── Public API ──────────────────────────────────────────────────────

    async def execute(
        self,
        key: str,
        operation: Operation,
        policy: RetryPolicy | None = None,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> Any:
        """Run ``operation`` at most once for ``key`` and return its result.

        Concurrent callers in this process share one run. Callers arriving
        after completion get the stored result; ``operation`` is not called.

        Raises:
            OperationFailed: The key holds a terminal FAILED outcome
            CircuitOpenError, RateLimitExceeded: Admission was refused; the
                key is released and may be retried
            IdempotencyConflict: Another process kept the key IN_PROGRESS
                past ``wait_timeout_seconds``
        """
        if not key:
            raise ContractViolation("idempotency key must be a non-empty string")
        return await self._flights.dedupe(
            key, lambda: self._resolve(key, operation, policy or self._policy, breaker)
        )

    async def get_record(self, key: str) -> IdempotencyRecord | None:
        """The live record for ``key``, or ``None``."""
        raw = await self._store.get(self._store_key(key))
        if raw is None:
            return None
        record = IdempotencyRecord.from_dict(raw)
        if self._clock() >= record.expires_at:
            return None
        return record

    async def clear(self, key: str, *, force: bool = False) -> bool:
        """Drop the record for ``key`` so the next ``execute`` runs afresh.

        Returns:
            ``True`` if a record was removed.

        Raises:
            IdempotencyConflict: The record is IN_PROGRESS and ``force`` is False
        """
        record = await self.get_record(key)
        if record is None:
            return False
        if record.status == IdempotencyStatus.IN_PROGRESS and not force:
            raise IdempotencyConflict(
                f"Idempotency key '{key}' is still in progress"
            ).with_context(idempotency_key=key)
        await self._store.delete(self._store_key(key))
        logger.info("idempotency.cleared", idempotency_key=key, status=record.status.value)
        return True

    # ── Resolution ──────────────────────────────────────────────────────

    def _store_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def _resolve(
        self,
        key: str,
        operation: Operation,
        policy: RetryPolicy,
        breaker: CircuitBreaker | None,
    ) -> Any:
        waited_since: float | None = None
        while True:
            record = await self.get_record(key)

            if record is None:
                claim = await self._claim(key)
                if claim is not None:
                    return await self._run(claim, operation, policy, breaker)
                continue

            if record.status == IdempotencyStatus.COMPLETED:
                self._metrics.record("idempotency_outcomes_total", outcome="replayed")
                logger.debug("idempotency.replayed", idempotency_key=key)
                return record.result

            if record.status == IdempotencyStatus.FAILED:
                self._metrics.record("idempotency_outcomes_total", outcome="failed_replayed")
                raise record.failure()

            # IN_PROGRESS under another owner.
            now = monotonic()
            if waited_since is None:
                waited_since = now
                logger.debug("idempotency.waiting", idempotency_key=key, owner=record.owner)
            elif now - waited_since >= self.wait_timeout_seconds:
                raise IdempotencyConflict(
                    f"Idempotency key '{key}' still in progress after "
                    f"{self.wait_timeout_seconds}s"
                ).with_context(idempotency_key=key)
            await asyncio.sleep(self.poll_interval)

    async def _claim(self, key: str) -> _Claim | None:
        now = self._clock()
        record = IdempotencyRecord(
            idempotency_key=key,
            status=IdempotencyStatus.IN_PROGRESS,
            created_at=now,
            expires_at=now + self.lease_seconds,
            owner=uuid.uuid4().hex,
        )
        claimed = await self._store.put_if_absent(
            self._store_key(key), record.to_dict(), ttl_seconds=self.lease_seconds
        )
        if not claimed:
            return None
        logger.debug("idempotency.claimed", idempotency_key=key, owner=record.owner)
        return _Claim(record=record)

    async def _run(
        self,
        claim: _Claim,
        operation: Operation,
        policy: RetryPolicy,
        breaker: CircuitBreaker | None,
    ) -> Any:
        key = claim.record.idempotency_key
        breaker = breaker or self._breaker
        attempts = 0

        async def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            if breaker is None:
                return await operation()
            return await breaker.execute(operation)

        with LogContext(idempotency_key=key):
            claim.heartbeat = asyncio.ensure_future(self._heartbeat(claim))
            try:
                try:
                    result, _ = await run_with_retry(attempt, policy, metrics=self._metrics)
                except ADMISSION_ERRORS:
                    await self._release(claim)
                    raise
                except RetryExhausted as exc:
                    await self._fail(claim, attempts, exc.last_error, "exhausted")
                    raise claim.record.failure() from exc.last_error
                except Exception as exc:
                    await self._fail(claim, attempts, exc, "non_retryable")
                    raise claim.record.failure() from exc

                try:
                    digest = result_hash(result)
                except (TypeError, ValueError) as exc:
                    violation = ContractViolation(
                        f"Result of idempotent operation '{key}' is not JSON-serializable",
                        cause=exc,
                    )
                    await self._fail(claim, attempts, violation, "non_retryable")
                    raise violation from exc

                await self._complete(claim, attempts, result, digest)
                return result
            finally:
                claim.heartbeat.cancel()

    async def _heartbeat(self, claim: _Claim) -> None:
        interval = self.lease_seconds / 3
        store_key = self._store_key(claim.record.idempotency_key)
        while True:
            await asyncio.sleep(interval)
            current = await self._store.get(store_key)
            if current is None or current.get("owner") != claim.record.owner:
                logger.warning(
                    "idempotency.lease_lost",
                    idempotency_key=claim.record.idempotency_key,
                    owner=claim.record.owner,
                )
                return
            claim.record.expires_at = self._clock() + self.lease_seconds
            await self._store.put(store_key, claim.record.to_dict(), ttl_seconds=self.lease_seconds)

    async def _finalize(self, claim: _Claim) -> None:
        claim.heartbeat.cancel()
        claim.record.expires_at = self._clock() + self.retention_seconds
        await self._store.put(
            self._store_key(claim.record.idempotency_key),
            claim.record.to_dict(),
            ttl_seconds=self.retention_seconds,
        )

    async def _complete(self, claim: _Claim, attempts: int, result: Any, digest: str) -> None:
        record = claim.record
        record.status = IdempotencyStatus.COMPLETED
        record.result = result
        record.result_hash = digest
        record.attempts = attempts
        await self._finalize(claim)
        self._metrics.record("idempotency_outcomes_total", outcome="completed")
        logger.info("idempotency.completed", idempotency_key=record.idempotency_key, attempts=attempts)

    async def _fail(
        self, claim: _Claim, attempts: int, error: BaseException, reason: str
    ) -> None:
        record = claim.record
        record.status = IdempotencyStatus.FAILED
        record.attempts = attempts
        record.error = {
            "type": type(error).__name__,
            "message": str(error),
            "reason": reason,
        }
        await self._finalize(claim)
        self._metrics.record("idempotency_outcomes_total", outcome="failed")
        logger.warning(
            "idempotency.failed",
            idempotency_key=record.idempotency_key,
            attempts=attempts,
            reason=reason,
            error=repr(error),
        )

    async def _release(self, claim: _Claim) -> None:
        claim.heartbeat.cancel()
        store_key = self._store_key(claim.record.idempotency_key)
        current = await self._store.get(store_key)
        if current is not None and current.get("owner") == claim.record.owner:
            await self._store.delete(store_key)
        self._metrics.record("idempotency_outcomes_total", outcome="released")
        logger.info("idempotency.released", idempotency_key=claim.record.idempotency_key)


__all__ = [
    "IdempotencyRecord",
    "IdempotencyStatus",
    "IdempotentExecutor",
    "canonical_json",
    "result_hash",
]

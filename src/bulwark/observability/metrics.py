"""Counters and events exposed by gateway components.

The gateway does not export or format telemetry. It records plain data
points (labelled counters plus a stream of :class:`GatewayEvent` objects)
that the host application can read or forward.

Example:
    >>> recorder = MetricsRecorder()
    >>> recorder.record("cache_requests_total", result="fresh")
    >>> recorder.value("cache_requests_total", result="fresh")
    1.0
    >>> recorder.subscribe(lambda event: print(event.name, event.labels))
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from bulwark.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Labels:
    """Immutable label set for metrics."""

    _labels: tuple[tuple[str, str], ...]

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> Labels:
        """Create from dictionary."""
        if not d:
            return cls(())
        return cls(tuple(sorted((k, str(v)) for k, v in d.items())))

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary."""
        return dict(self._labels)


class Counter:
    """A monotonically increasing, labelled counter."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._values: dict[Labels, float] = {}
        self._lock = threading.Lock()

    def inc(self, value: float = 1.0, **labels: Any) -> None:
        """Increment the counter for a label set."""
        if value < 0:
            raise ValueError("Counter can only increase")
        key = Labels.from_dict(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def get(self, **labels: Any) -> float:
        """Get current value for a label set."""
        with self._lock:
            return self._values.get(Labels.from_dict(labels), 0.0)

    def total(self) -> float:
        """Sum across all label sets."""
        with self._lock:
            return sum(self._values.values())

    def collect(self) -> list[dict[str, Any]]:
        """Collect all counter values."""
        with self._lock:
            return [
                {
                    "name": self.name,
                    "type": "counter",
                    "labels": labels.to_dict(),
                    "value": value,
                }
                for labels, value in self._values.items()
            ]


@dataclass(frozen=True)
class GatewayEvent:
    """A single observable occurrence (cache hit, breaker transition, ...)."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


EventListener = Callable[[GatewayEvent], None]


class MetricsRecorder:
    """Owns the gateway's counters and fans events out to listeners.

    One recorder is normally shared by every component of a
    :class:`~bulwark.gateway.Gateway`; components built on their own get a
    private recorder.
    """

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._listeners: list[EventListener] = []
        self._lock = threading.Lock()

    def counter(self, name: str) -> Counter:
        """Get or create a counter by name."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name)
            return self._counters[name]

    def record(self, name: str, **labels: Any) -> None:
        """Increment ``name`` for ``labels`` and notify listeners."""
        self.counter(name).inc(**labels)
        with self._lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        event = GatewayEvent(name=name, labels=Labels.from_dict(labels).to_dict())
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("metrics.listener_failed", metric=name)

    def value(self, name: str, **labels: Any) -> float:
        """Current value of ``name`` for an exact label set."""
        return self.counter(name).get(**labels)

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> list[dict[str, Any]]:
        """All counter values as plain dicts."""
        with self._lock:
            counters = list(self._counters.values())
        result: list[dict[str, Any]] = []
        for counter in counters:
            result.extend(counter.collect())
        return result


__all__ = ["Counter", "GatewayEvent", "Labels", "MetricsRecorder"]

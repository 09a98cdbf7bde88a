"""Bulwark observability: counters and events as plain data points."""

from bulwark.observability.metrics import Counter, GatewayEvent, MetricsRecorder

__all__ = ["Counter", "GatewayEvent", "MetricsRecorder"]

"""
Shared pytest fixtures and configuration for bulwark tests.

This module provides:
- A manually driven clock for deterministic time
- A fresh metrics recorder per test
- Location-based auto markers

Usage:
    def test_refill(clock):
        bucket = TokenBucket(5, 5.0, clock=clock)
        clock.advance(0.2)
"""

from pathlib import Path

import pytest

from bulwark.core.clock import ManualClock
from bulwark.observability.metrics import MetricsRecorder


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path) or "gateway" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    """A clock starting at t=1000s that only moves when advanced."""
    return ManualClock(start=1000.0)


@pytest.fixture
def metrics() -> MetricsRecorder:
    """A fresh recorder, so counters never leak between tests."""
    return MetricsRecorder()

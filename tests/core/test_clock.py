"""Tests for clock sources."""

import pytest

from bulwark.core.clock import ManualClock


class TestManualClock:
    def test_starts_at_given_time(self):
        assert ManualClock(start=5.0)() == 5.0

    def test_advance(self):
        clock = ManualClock()
        clock.advance(0.25)
        clock.advance(0.5)
        assert clock() == pytest.approx(0.75)

    def test_cannot_move_backwards(self):
        clock = ManualClock(start=10.0)
        with pytest.raises(ValueError):
            clock.advance(-1)

    def test_set(self):
        clock = ManualClock()
        clock.set(123.0)
        assert clock() == 123.0

"""Tests for loop duration tracking."""

import pytest

from korero.autonomous.duration_tracker import HISTORY_LIMIT, DurationTracker, format_duration


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.parametrize(
    "seconds,expected",
    [(0, "0s"), (45, "45s"), (125, "2m 5s"), (3780, "1h 3m"), (-5, "0s")],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


class TestDurationTracker:
    def test_records_elapsed_time(self, tmp_path):
        clock = FakeClock()
        tracker = DurationTracker(tmp_path / ".duration_history", clock=clock)
        tracker.start()
        clock.now += 90
        assert tracker.stop() == 90
        assert tracker.history() == [90.0]
        assert tracker.summary()["last"] == "1m 30s"

    def test_stop_without_start(self, tmp_path):
        assert DurationTracker(tmp_path / ".duration_history").stop() is None

    def test_history_is_capped(self, tmp_path):
        clock = FakeClock()
        tracker = DurationTracker(tmp_path / ".duration_history", clock=clock)
        for seconds in range(1, HISTORY_LIMIT + 4):
            tracker.start()
            clock.now += seconds
            tracker.stop()
        history = tracker.history()
        assert len(history) == HISTORY_LIMIT
        assert history[-1] == HISTORY_LIMIT + 3
        assert tracker.average() == sum(history) / HISTORY_LIMIT

    def test_empty_summary(self, tmp_path):
        summary = DurationTracker(tmp_path / ".duration_history").summary()
        assert summary["samples"] == 0
        assert summary["average"] == "0s"

"""Tests for the periodic timer, driven by a fake clock."""

from __future__ import annotations

import threading

import pytest

from taskbridge.timer import PeriodicTimer


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestPeriodicTimer:
    """Tick scheduling."""

    def test_not_due_before_interval(self):
        clock = FakeClock()
        calls = []
        timer = PeriodicTimer(60, lambda: calls.append(1), clock=clock)
        clock.advance(59)
        assert timer.run_pending() is False
        assert calls == []

    def test_fires_at_interval(self):
        clock = FakeClock()
        calls = []
        timer = PeriodicTimer(60, lambda: calls.append(1), clock=clock)
        clock.advance(60)
        assert timer.run_pending() is True
        assert timer.run_pending() is False
        assert calls == [1]
        assert timer.next_due == clock.now + 60

    def test_fire_immediately(self):
        clock = FakeClock()
        calls = []
        timer = PeriodicTimer(60, lambda: calls.append(1), clock=clock, fire_immediately=True)
        assert timer.run_pending() is True
        assert calls == [1]

    def test_missed_ticks_not_replayed(self):
        clock = FakeClock()
        calls = []
        timer = PeriodicTimer(60, lambda: calls.append(1), clock=clock)
        clock.advance(600)
        timer.run_pending()
        timer.run_pending()
        assert calls == [1]

    def test_callback_error_does_not_stop_timer(self):
        clock = FakeClock()

        def boom():
            raise RuntimeError("fail")

        timer = PeriodicTimer(10, boom, clock=clock)
        clock.advance(10)
        assert timer.run_pending() is True
        clock.advance(10)
        assert timer.run_pending() is True

    def test_set_interval_reschedules(self):
        clock = FakeClock()
        timer = PeriodicTimer(60, lambda: None, clock=clock)
        timer.set_interval(300)
        assert timer.interval == 300
        assert timer.next_due == clock.now + 300

    @pytest.mark.parametrize("interval", [0, -1])
    def test_interval_must_be_positive(self, interval):
        with pytest.raises(ValueError):
            PeriodicTimer(interval, lambda: None)


class TestTimerThread:
    """Start/stop of the background thread."""

    def test_thread_fires_and_stops(self):
        fired = threading.Event()
        timer = PeriodicTimer(60, fired.set, poll=0.05, fire_immediately=True)
        timer.start()
        try:
            assert fired.wait(timeout=2)
            assert timer.is_running
        finally:
            timer.stop()
        assert not timer.is_running

"""
Cancellable periodic timer.

The timer thread wakes every ``poll`` seconds and asks ``run_pending``
whether a tick is due. Tests skip the thread entirely: they hand in a
fake clock, advance it, and call ``run_pending`` themselves.

Ticks that fall due while the callback is still running are not
replayed; the next tick is scheduled one interval after the one that
fired.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger("taskbridge.timer")


class PeriodicTimer:
    """Fire a callback every ``interval`` seconds until stopped.

    Args:
        interval: Seconds between ticks.
        callback: Called with no arguments on each tick.
        clock: Monotonic time source.
        poll: How often the thread checks for a due tick.
        fire_immediately: Make the first tick due at start.
        name: Thread name.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], object],
        clock: Callable[[], float] = time.monotonic,
        poll: float = 1.0,
        fire_immediately: bool = False,
        name: str = "taskbridge-timer",
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = float(interval)
        self._callback = callback
        self._clock = clock
        self._poll = poll
        self._name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._next_due = clock() if fire_immediately else clock() + self._interval

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def next_due(self) -> float:
        """Clock value at which the next tick fires."""
        return self._next_due

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def set_interval(self, interval: float) -> None:
        """Change the interval; the pending tick is rescheduled from now."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = float(interval)
        self._next_due = self._clock() + self._interval

    def run_pending(self) -> bool:
        """Fire the callback if a tick is due.

        Returns:
            True if the callback ran.
        """
        now = self._clock()
        if now < self._next_due:
            return False
        self._next_due = now + self._interval
        try:
            self._callback()
        except Exception as exc:
            logger.error("Timer callback failed: %s", exc, exc_info=True)
        return True

    def start(self) -> None:
        """Start the timer thread. Calling start twice is a no-op."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5) -> None:
        """Stop the timer and wait for the thread to exit."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            self._stop_event.wait(timeout=self._poll)

"""Cancellable fixed-interval ticker driving the polling loops."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator


class Ticker:
    """Yield once per interval until stopped.

    Suspension happens only inside ``__iter__`` between ticks, and ``stop``
    wakes a sleeping ticker immediately.
    """

    def __init__(
        self,
        interval_seconds: float,
        *,
        stop_event: threading.Event | None = None,
    ) -> None:
        if interval_seconds < 0:
            raise ValueError("Ticker interval must be >= 0.")
        self.interval_seconds = interval_seconds
        self._stop = stop_event or threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return False if stopped meanwhile."""

        if seconds > 0:
            return not self._stop.wait(timeout=seconds)
        return not self._stop.is_set()

    def __iter__(self) -> Iterator[int]:
        tick = 0
        next_at = time.monotonic()
        while not self._stop.is_set():
            yield tick
            tick += 1
            next_at += self.interval_seconds
            delay = next_at - time.monotonic()
            if delay < 0:
                # Overran the interval; restart the schedule from now.
                next_at = time.monotonic()
                delay = 0.0
            if not self.sleep(delay):
                return

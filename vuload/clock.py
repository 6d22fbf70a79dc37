from __future__ import annotations

import threading
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...

    def wait(self, event: threading.Event, timeout: float) -> bool: ...


class MonotonicClock:
    """Scheduling clock backed by ``time.monotonic``."""

    def now(self) -> float:
        return time.monotonic()

    def wait(self, event: threading.Event, timeout: float) -> bool:
        """Sleep for ``timeout`` seconds unless ``event`` fires first."""
        return event.wait(timeout=max(timeout, 0.0))


class RunClock:
    """Elapsed time since the run (or a scenario) started."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or MonotonicClock()
        self._started_at: float | None = None

    @property
    def started(self) -> bool:
        return self._started_at is not None

    def start(self) -> float:
        self._started_at = self._clock.now()
        return self._started_at

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return max(self._clock.now() - self._started_at, 0.0)

    def wait_until(self, offset_s: float, event: threading.Event) -> bool:
        """Block until ``offset_s`` seconds after start. Returns True if ``event`` fired."""
        while True:
            remaining = offset_s - self.elapsed()
            if remaining <= 0:
                return event.is_set()
            if self._clock.wait(event, remaining):
                return True


__all__ = ["Clock", "MonotonicClock", "RunClock"]

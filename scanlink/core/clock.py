# scanlink/core/clock.py

import time


class MonotonicClock:
    """Clock used by timer-driven managers; tests substitute a manual clock."""

    def now(self) -> float:
        return time.monotonic()

"""
Timing helpers for run phases and reports.
"""

import time
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional


class Stopwatch:
    """Wall-clock interval measured with a monotonic clock."""

    def __init__(self):
        self.started_at: Optional[datetime] = None
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def start(self) -> 'Stopwatch':
        self.started_at = datetime.now()
        self._start = time.monotonic()
        self._end = None
        return self

    def stop(self) -> float:
        self._end = time.monotonic()
        return self.elapsed

    @property
    def elapsed(self) -> float:
        """Seconds since start, or between start and stop once stopped."""
        if self._start is None:
            return 0.0
        end = self._end if self._end is not None else time.monotonic()
        return end - self._start


@contextmanager
def timed() -> Iterator[Stopwatch]:
    """Time the body of a with block; the stopwatch stops even on error."""
    stopwatch = Stopwatch().start()
    try:
        yield stopwatch
    finally:
        stopwatch.stop()


def format_duration(seconds: Optional[float]) -> str:
    """Format duration in seconds to human-readable string."""
    if seconds is None:
        return 'N/A'

    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.2f}h"

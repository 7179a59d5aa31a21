"""
Timing helpers for handler runs and processing-duration metadata.
"""
import time
from datetime import datetime, timezone
from typing import Optional


class Timer:
    """Simple monotonic timer for measuring handler latency."""

    def __init__(self):
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def start(self) -> "Timer":
        self._start = time.monotonic()
        return self

    def stop(self) -> int:
        """Stop timer and return elapsed milliseconds."""
        self._end = time.monotonic()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> int:
        if self._start is None:
            return 0
        end = self._end or time.monotonic()
        return int((end - self._start) * 1000)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)

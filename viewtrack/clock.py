"""
Time source for the pipeline.

All stored timestamps are naive UTC datetimes. Services take a clock so the
dedup window, handle expiry, sealing and token buckets can be driven
deterministically.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Tuple


class SystemClock:
    """Wall-clock time in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def today(self) -> date:
        return self.now().date()


def to_epoch(value: datetime) -> float:
    """Seconds since the epoch for a naive UTC datetime."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Half-open [start, end) range of a UTC day."""
    start = datetime.combine(day, datetime.min.time())
    return start, start + timedelta(days=1)

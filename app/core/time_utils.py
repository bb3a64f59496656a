"""
Time helpers shared by the persistence-backed components.

All datetimes written to the store are naive UTC so that comparisons behave the
same on PostgreSQL and SQLite.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def elapsed_ms(start: float, end: float) -> int:
    """Milliseconds between two perf_counter/monotonic readings"""
    return int(round((end - start) * 1000))

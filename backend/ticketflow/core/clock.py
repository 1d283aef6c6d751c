"""
Clock used for all expiry math.

Timestamps are naive UTC throughout the service so that comparisons behave
the same on PostgreSQL and SQLite. Services accept a `Clock` so tests can
move time forward deterministically.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

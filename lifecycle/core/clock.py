"""Injectable wall clock.

Every component takes a ``clock`` callable instead of calling
``datetime.now`` directly, so grace periods and token windows can be
exercised deterministically and the database server's own ``NOW()`` is
never consulted.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def next_daily_run(now: datetime, hour_utc: int) -> datetime:
    """Next occurrence of ``hour_utc``:00 UTC strictly after ``now``."""
    candidate = now.astimezone(UTC).replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate

"""Local-time helpers for quiet hours and the daily send window.

All functions take the current time explicitly (an aware UTC datetime) so
the scheduler's injected clock drives them.  Unknown timezone names fall back
to the configured default instead of raising.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

logger = structlog.get_logger()

DEFAULT_TIMEZONE = "America/New_York"
QUIET_HOUR_START = 21
QUIET_HOUR_END = 8


def resolve_zone(tz_name: str | None, default: str = DEFAULT_TIMEZONE) -> ZoneInfo:
    """Return the ``ZoneInfo`` for *tz_name*, or *default* when it is unknown."""
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("unknown_timezone", timezone=tz_name, fallback=default)
    return ZoneInfo(default)


def is_quiet_hours(
    zone: ZoneInfo,
    now: datetime,
    start: int = QUIET_HOUR_START,
    end: int = QUIET_HOUR_END,
) -> bool:
    """Return True when *now* falls inside the local quiet window.

    The window is ``[start, end)`` in local hours and wraps midnight when
    ``start > end`` (the default 21:00 to 08:00).  ``start == end`` disables
    quiet hours.
    """
    hour = now.astimezone(zone).hour
    if start == end:
        return False
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def quiet_hours_end(
    zone: ZoneInfo,
    now: datetime,
    end: int = QUIET_HOUR_END,
) -> datetime:
    """Return the next local ``end:00`` after *now*, in UTC."""
    local = now.astimezone(zone)
    candidate = local.replace(hour=end, minute=0, second=0, microsecond=0)
    if candidate <= local:
        candidate = candidate + timedelta(days=1)
    return candidate.astimezone(UTC)


def local_midnight(zone: ZoneInfo, now: datetime) -> datetime:
    """Return the start of the local calendar day containing *now*, in UTC."""
    local = now.astimezone(zone)
    return local.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(UTC)

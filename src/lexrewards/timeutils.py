"""Calendar helpers shared by streaks, leaderboards and wishlist alerts.

All instants are stored in UTC. Calendar days are evaluated in the
configured zone (``LXR_TIMEZONE``) so a streak day or a daily leaderboard
matches the user's local midnight.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from lexrewards.config import get_settings


def get_zone() -> ZoneInfo:
    """Return the configured calendar zone."""
    return ZoneInfo(get_settings().timezone)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Normalize to an aware UTC datetime (naive values are assumed UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def local_date(dt: datetime) -> date:
    """Calendar day of an instant in the configured zone."""
    return as_utc(dt).astimezone(get_zone()).date()


def start_of_day(d: date) -> datetime:
    """UTC instant of local midnight at the start of ``d``."""
    return datetime.combine(d, time.min, tzinfo=get_zone()).astimezone(timezone.utc)


def reference_midnight(reference_time: datetime | None = None) -> datetime:
    """Local midnight that starts the day containing ``reference_time``."""
    if reference_time is None:
        reference_time = utcnow()
    return start_of_day(local_date(reference_time))


def get_sunday(d: date) -> date:
    """Sunday on or before ``d`` (weeks are Sunday-aligned)."""
    return d - timedelta(days=(d.weekday() + 1) % 7)


def first_of_next_month(d: date) -> date:
    if d.month == 12:
        return date(d.year + 1, 1, 1)
    return date(d.year, d.month + 1, 1)

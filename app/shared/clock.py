"""Time helpers. All stored timestamps are naive UTC."""

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_now(tz_name: str, now_utc: datetime) -> datetime:
    """Convert a naive UTC instant to naive wall-clock time in tz_name"""
    return now_utc.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)


def to_utc(local: datetime, tz_name: str) -> datetime:
    """Convert naive wall-clock time in tz_name to naive UTC"""
    return local.replace(tzinfo=ZoneInfo(tz_name)).astimezone(timezone.utc).replace(tzinfo=None)


def within_hours(t: time, opens_at: time, closes_at: time) -> bool:
    """
    True if t falls in [opens_at, closes_at).

    Overnight ranges (closes_at < opens_at, e.g. 22:00-02:00) wrap around
    midnight. opens_at == closes_at means open all day.
    """
    if opens_at == closes_at:
        return True
    if opens_at < closes_at:
        return opens_at <= t < closes_at
    return t >= opens_at or t < closes_at


def slot_datetime(slot_date: date, slot_time: time) -> datetime:
    return datetime.combine(slot_date, slot_time)

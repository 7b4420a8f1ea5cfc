from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    """Calendar day used for daily override quotas."""
    return utcnow().date()


def to_store_local(dt: datetime, tz_name: str) -> datetime:
    """Convert a UTC-naive timestamp into the store's wall-clock time (naive)."""
    aware = dt.replace(tzinfo=timezone.utc)
    return aware.astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)


def sunday_based_weekday(dt: datetime) -> int:
    """0 = Sunday ... 6 = Saturday (Python's weekday() is 0 = Monday)."""
    return (dt.weekday() + 1) % 7


def time_in_window(value: time, start: time, end: time) -> bool:
    """
    Inclusive time-of-day check. A window whose end is earlier than its start
    wraps past midnight (e.g. 22:00-06:00).
    """
    if start <= end:
        return start <= value <= end
    return value >= start or value <= end


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_time_of_day(value: Optional[str]) -> Optional[time]:
    """Parse "HH:MM" or "HH:MM:SS"; None / "" -> None."""
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None
    return time.fromisoformat(s)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")

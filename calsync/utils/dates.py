"""Date and time helpers shared by the normalizer and reconciler."""

import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

LATEST_DEFAULT_END = time(23, 0)
LAST_MINUTE = time(23, 59)


def get_zone(name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to UTC for unknown names."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return ZoneInfo("UTC")


def parse_iso_datetime(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as returned by calendar APIs."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def to_local(moment: datetime, tz_name: Optional[str]) -> datetime:
    """
    Convert a timestamp into the user's timezone.

    Naive timestamps are floating times and are taken as already local.
    """
    zone = get_zone(tz_name)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=zone)
    return moment.astimezone(zone)


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")[:2]
    return time(int(hours), int(minutes))


def default_end_time(start: time) -> time:
    """Start plus one hour, never later than 23:00 on the same day."""
    if start.hour >= LATEST_DEFAULT_END.hour:
        return LATEST_DEFAULT_END
    return time(start.hour + 1, start.minute)


def ensure_end_after_start(start: str, end: Optional[str]) -> tuple[str, str]:
    """
    Return a (start, end) "HH:MM" pair with end strictly after start.

    An invalid end is pushed to start + 1h with the hour capped at 23. When
    that still does not land after start, 23:59 is used, and a start of 23:59
    moves back one minute.
    """
    start_t = parse_hhmm(start)
    end_t = parse_hhmm(end) if end else None
    if end_t is not None and end_t > start_t:
        return format_hhmm(start_t), format_hhmm(end_t)

    candidate = time(min(start_t.hour + 1, 23), start_t.minute)
    if candidate > start_t:
        return format_hhmm(start_t), format_hhmm(candidate)
    if start_t < LAST_MINUTE:
        return format_hhmm(start_t), format_hhmm(LAST_MINUTE)
    return "23:58", format_hhmm(LAST_MINUTE)


def iso_weekday(value: date) -> int:
    """Day of week with 1 = Monday ... 7 = Sunday."""
    return value.isoweekday()


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping the day to the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def sync_window(now: datetime, past_days: int = 7, future_months: int = 3) -> tuple[datetime, datetime]:
    """The bounded window queried from remote calendars."""
    return now - timedelta(days=past_days), add_months(now, future_months)

"""Conversion of provider events into the canonical internal form."""

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional

from calsync.sync.ics import ParsedEvent
from calsync.utils.dates import (
    default_end_time,
    format_hhmm,
    parse_iso_datetime,
    to_local,
)

logger = logging.getLogger(__name__)

GOOGLE_UID_PREFIX = "gcal"
ICS_UID_PREFIX = "ics"


class EventShape(str, Enum):
    """What an event becomes internally."""
    TASK = "task"
    SCHEDULE = "schedule"


class ImportMode(str, Enum):
    TASKS = "tasks"
    SCHEDULE = "schedule"
    SMART = "smart"


@dataclass(frozen=True)
class CanonicalEvent:
    external_uid: str
    title: str
    is_all_day: bool
    date: date
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    hash: str = ""

    @property
    def date_iso(self) -> str:
        return self.date.isoformat()


def event_hash(title: str, event_date: date, start_time: Optional[str]) -> str:
    """
    Change-detection hash over title, date and start time only.

    Description, location and end time changes do not alter it.
    """
    data = "|".join([title, event_date.isoformat(), start_time or ""])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:32]


def external_uid(prefix: str, calendar_id: str, native_id: str) -> str:
    return f"{prefix}:{calendar_id}:{native_id}"


def resolve_shape(event: CanonicalEvent, import_mode: str) -> EventShape:
    """Smart mode maps all-day events to tasks and timed ones to blocks."""
    mode = ImportMode(import_mode)
    if mode is ImportMode.TASKS:
        return EventShape.TASK
    if mode is ImportMode.SCHEDULE:
        return EventShape.SCHEDULE
    return EventShape.TASK if event.is_all_day else EventShape.SCHEDULE


def _build(
    uid: str,
    title: str,
    start: date,
    end: Optional[date],
    user_timezone: Optional[str],
) -> CanonicalEvent:
    if not isinstance(start, datetime):
        return CanonicalEvent(
            external_uid=uid,
            title=title,
            is_all_day=True,
            date=start,
            hash=event_hash(title, start, None),
        )

    local_start = to_local(start, user_timezone)
    start_time = format_hhmm(local_start.time())
    if isinstance(end, datetime):
        end_time = format_hhmm(to_local(end, user_timezone).time())
    else:
        end_time = format_hhmm(default_end_time(local_start.time()))

    local_date = local_start.date()
    return CanonicalEvent(
        external_uid=uid,
        title=title,
        is_all_day=False,
        date=local_date,
        start_time=start_time,
        end_time=end_time,
        hash=event_hash(title, local_date, start_time),
    )


def normalize_google_event(
    event: dict,
    calendar_id: str,
    user_timezone: Optional[str],
) -> Optional[CanonicalEvent]:
    """Normalize a Calendar API event; cancelled or untitled events give None."""
    if event.get("status") == "cancelled":
        return None

    title = (event.get("summary") or "").strip()
    if not title or not event.get("id"):
        return None

    start_info = event.get("start") or {}
    end_info = event.get("end") or {}
    uid = external_uid(GOOGLE_UID_PREFIX, calendar_id, event["id"])

    if start_info.get("date"):
        return _build(uid, title, date.fromisoformat(start_info["date"]), None, user_timezone)

    if not start_info.get("dateTime"):
        logger.debug(f"Event {event['id']} has no start, skipping")
        return None

    start = parse_iso_datetime(start_info["dateTime"])
    end = parse_iso_datetime(end_info["dateTime"]) if end_info.get("dateTime") else None
    return _build(uid, title, start, end, user_timezone)


def normalize_ics_event(
    event: ParsedEvent,
    source_id: int,
    user_timezone: Optional[str],
) -> Optional[CanonicalEvent]:
    """Normalize a parsed VEVENT belonging to an ICS source."""
    if event.status and event.status.upper() == "CANCELLED":
        return None
    title = (event.summary or "").strip()
    if not title:
        return None

    uid = external_uid(ICS_UID_PREFIX, str(source_id), event.native_id)
    return _build(uid, title, event.start, event.end, user_timezone)

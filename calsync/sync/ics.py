"""ICS feed retrieval and parsing."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Union

import httpx
from icalendar import Calendar as ICalendar

from calsync.config import get_settings
from calsync.errors import FetchError, ParseError

logger = logging.getLogger(__name__)


@dataclass
class ParsedEvent:
    """One VEVENT as read from an ICS document."""
    uid: str
    summary: str
    start: Union[date, datetime]
    end: Optional[Union[date, datetime]] = None
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None
    recurrence_id: Optional[str] = None

    @property
    def is_all_day(self) -> bool:
        return not isinstance(self.start, datetime)

    @property
    def native_id(self) -> str:
        """UID, qualified by RECURRENCE-ID for overridden occurrences."""
        if self.recurrence_id:
            return f"{self.uid}_{self.recurrence_id}"
        return self.uid


@dataclass
class ParsedCalendar:
    name: Optional[str] = None
    events: list[ParsedEvent] = field(default_factory=list)
    skipped: int = 0


def _text(component, key: str) -> Optional[str]:
    value = component.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _decode_event(component) -> Optional[ParsedEvent]:
    """Read one VEVENT, or None when it lacks what an import needs."""
    status = _text(component, "STATUS")
    if status and status.upper() == "CANCELLED":
        return None

    uid = _text(component, "UID")
    summary = _text(component, "SUMMARY")
    dtstart = component.get("DTSTART")
    if not uid or not summary or dtstart is None:
        return None

    start = dtstart.dt
    if not isinstance(start, date):
        return None

    dtend = component.get("DTEND")
    end = dtend.dt if dtend is not None else None
    if end is not None and not isinstance(end, date):
        end = None

    recurrence = component.get("RECURRENCE-ID")
    recurrence_id = None
    if recurrence is not None and isinstance(recurrence.dt, date):
        fmt = "%Y%m%dT%H%M%S" if isinstance(recurrence.dt, datetime) else "%Y%m%d"
        recurrence_id = recurrence.dt.strftime(fmt)

    return ParsedEvent(
        uid=uid,
        summary=summary,
        start=start,
        end=end,
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        status=status,
        recurrence_id=recurrence_id,
    )


def parse_ics(content: Union[str, bytes]) -> ParsedCalendar:
    """
    Parse an ICS document into events.

    Cancelled or malformed VEVENTs are skipped and counted; a document that
    cannot be read at all raises ParseError.
    """
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")

    if "BEGIN:VCALENDAR" not in content:
        raise ParseError("Invalid calendar data: no VCALENDAR found")

    try:
        calendar_obj = ICalendar.from_ical(content)
    except ValueError as e:
        raise ParseError(f"Failed to parse calendar: {e}") from e

    result = ParsedCalendar(name=_text(calendar_obj, "X-WR-CALNAME"))

    for component in calendar_obj.walk("VEVENT"):
        try:
            event = _decode_event(component)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"Skipping malformed VEVENT: {e}")
            event = None

        if event is None:
            result.skipped += 1
            continue
        result.events.append(event)

    logger.debug(f"Parsed {len(result.events)} events ({result.skipped} skipped)")
    return result


async def fetch_ics(url: str) -> str:
    """Download an ICS feed, raising FetchError with a readable message."""
    settings = get_settings()
    headers = {"Accept": "text/calendar", "User-Agent": settings.user_agent}

    try:
        async with httpx.AsyncClient(
            timeout=settings.fetch_timeout_seconds, follow_redirects=True
        ) as client:
            response = await client.get(url, headers=headers)
    except httpx.ConnectError as e:
        logger.warning(f"Could not connect to calendar feed {url}: {e}")
        raise FetchError(
            "Could not reach the calendar server. Please check the URL.", calendar_id=url
        ) from e
    except httpx.HTTPError as e:
        logger.warning(f"Calendar feed request failed for {url}: {e}")
        raise FetchError(
            "Failed to fetch calendar feed. Please check the URL and try again.", calendar_id=url
        ) from e

    if response.status_code in (401, 403):
        raise FetchError(
            "Access denied. The calendar feed may require authentication.",
            calendar_id=url,
            status_code=response.status_code,
        )
    if response.status_code == 404:
        raise FetchError(
            "Calendar feed not found. Please check the URL.",
            calendar_id=url,
            status_code=404,
        )
    if response.status_code >= 400:
        raise FetchError(
            f"Failed to fetch calendar (HTTP {response.status_code})",
            calendar_id=url,
            status_code=response.status_code,
        )

    content_type = response.headers.get("content-type", "")
    if "text/calendar" not in content_type and "text/plain" not in content_type:
        # Plenty of servers mislabel feeds; the body check below decides
        logger.debug(f"Unexpected content type {content_type!r} for {url}")

    text = response.text
    if "BEGIN:VCALENDAR" not in text:
        raise FetchError(
            "Invalid calendar feed. The URL does not return an ICS file.", calendar_id=url
        )
    return text


async def fetch_and_parse_ics(url: str) -> ParsedCalendar:
    """Fetch a feed and parse it; parse failures surface as FetchError."""
    text = await fetch_ics(url)
    try:
        return parse_ics(text)
    except ParseError as e:
        raise FetchError(str(e), calendar_id=url) from e

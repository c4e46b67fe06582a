"""Google Calendar API wrapper (read-only)."""

import logging
from datetime import datetime, timezone

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calsync.config import get_settings
from calsync.errors import FetchError

logger = logging.getLogger(__name__)


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class GoogleCalendarClient:
    """Wrapper around Google Calendar API."""

    def __init__(self, access_token: str):
        """Initialize with access token."""
        self.credentials = Credentials(token=access_token)
        self.service = build("calendar", "v3", credentials=self.credentials, cache_discovery=False)
        self.settings = get_settings()

    def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        page_size: int | None = None,
    ) -> list[dict]:
        """
        List single-occurrence events of a calendar within a time window.

        Recurring events are expanded server-side; pages of at most
        ``page_size`` events are followed until exhausted.
        """
        request_params = {
            "calendarId": calendar_id,
            "timeMin": _rfc3339(time_min),
            "timeMax": _rfc3339(time_max),
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": page_size or self.settings.remote_page_size,
        }

        all_events = []
        page_token = None

        try:
            while True:
                if page_token:
                    request_params["pageToken"] = page_token

                result = self.service.events().list(**request_params).execute()
                all_events.extend(result.get("items", []))

                page_token = result.get("nextPageToken")
                if not page_token:
                    break
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            logger.warning(f"Calendar {calendar_id} returned HTTP {status}")
            raise FetchError(
                f"Failed to fetch calendar: {calendar_id}",
                calendar_id=calendar_id,
                status_code=status,
            ) from e
        except (OSError, ValueError) as e:
            logger.warning(f"Calendar {calendar_id} request failed: {e}")
            raise FetchError(
                f"Failed to fetch calendar: {calendar_id}", calendar_id=calendar_id
            ) from e

        return all_events

    def list_calendars(self) -> list[dict]:
        """List all calendars the account has access to."""
        try:
            result = self.service.calendarList().list().execute()
        except HttpError as e:
            raise FetchError(
                "Failed to fetch calendars from Google",
                status_code=getattr(e.resp, "status", None),
            ) from e
        return [
            {
                "id": cal["id"],
                "summary": cal.get("summary", cal["id"]),
                "description": cal.get("description"),
                "primary": bool(cal.get("primary", False)),
                "background_color": cal.get("backgroundColor"),
            }
            for cal in result.get("items", [])
        ]

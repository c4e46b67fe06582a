"""Google Calendar connection API endpoints."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from calsync.api.sources import SourceResponse, source_response, verify_quest
from calsync.auth.google import get_connection, get_valid_access_token
from calsync.auth.session import User, get_current_user
from calsync.config import google_oauth_configured
from calsync.database import get_database
from calsync.errors import FetchError
from calsync.sync import engine
from calsync.sync.google_calendar import GoogleCalendarClient
from calsync.sync.normalize import ImportMode

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/google", tags=["google"])


class ConnectionStatusResponse(BaseModel):
    configured: bool
    connected: bool
    email: Optional[str] = None
    source: Optional[SourceResponse] = None


class RemoteCalendar(BaseModel):
    id: str
    summary: str
    description: Optional[str] = None
    primary: bool = False
    background_color: Optional[str] = None
    selected: bool = False


class UpdateSelectionRequest(BaseModel):
    calendar_ids: Optional[list[str]] = None
    import_as: Optional[ImportMode] = None
    target_quest_id: Optional[int] = None


async def _remote_source(user_id: int) -> tuple[dict, dict]:
    """The user's connection and its remote source, or 404."""
    connection = await get_connection(user_id)
    if not connection:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No Google Calendar connection found"
        )
    source = await engine.get_or_create_remote_source(user_id, connection["id"])
    return connection, source


@router.get("", response_model=ConnectionStatusResponse)
async def get_connection_status(user: User = Depends(get_current_user)):
    """Whether OAuth is configured and the user is connected."""
    connection = await get_connection(user.id)
    if not connection:
        return ConnectionStatusResponse(configured=google_oauth_configured(), connected=False)

    source = await engine.get_or_create_remote_source(user.id, connection["id"])
    return ConnectionStatusResponse(
        configured=google_oauth_configured(),
        connected=True,
        email=connection["email"],
        source=source_response(source),
    )


@router.delete("")
async def disconnect_google(user: User = Depends(get_current_user)):
    """Disconnect Google Calendar and delete everything imported from it."""
    summary = await engine.disconnect_provider(user.id)
    return {"status": "ok", "message": "Google Calendar disconnected", **summary}


@router.get("/calendars", response_model=list[RemoteCalendar])
async def list_remote_calendars(user: User = Depends(get_current_user)):
    """List the account's calendars with the current selection."""
    connection, source = await _remote_source(user.id)

    access_token = await get_valid_access_token(connection)
    if not access_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Failed to refresh access token. Please reconnect Google Calendar."
        )

    try:
        calendars = GoogleCalendarClient(access_token).list_calendars()
    except FetchError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    selected = set(json.loads(source["selected_calendars"] or "[]"))
    return [
        RemoteCalendar(**calendar, selected=calendar["id"] in selected)
        for calendar in calendars
    ]


@router.patch("/calendars", response_model=SourceResponse)
async def update_calendar_selection(
    request: UpdateSelectionRequest,
    user: User = Depends(get_current_user),
):
    """Choose which calendars are imported and how."""
    _, source = await _remote_source(user.id)
    await verify_quest(user.id, request.target_quest_id)

    db = await get_database()
    if request.calendar_ids is not None:
        calendar_ids = list(dict.fromkeys(request.calendar_ids))
        await db.execute(
            "UPDATE calendar_sources SET selected_calendars = ? WHERE id = ?",
            (json.dumps(calendar_ids), source["id"])
        )
    if request.import_as is not None:
        await db.execute(
            "UPDATE calendar_sources SET import_as = ? WHERE id = ?",
            (request.import_as.value, source["id"])
        )
    if request.target_quest_id is not None:
        await db.execute(
            "UPDATE calendar_sources SET target_quest_id = ? WHERE id = ?",
            (request.target_quest_id, source["id"])
        )
    await db.commit()

    logger.info(f"Updated Google Calendar selection for user {user.id}")
    return source_response(await engine.get_source(source["id"]))

"""Calendar source management API endpoints."""

import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from calsync.auth.session import User, get_current_user
from calsync.database import get_database, get_write_lock
from calsync.errors import (
    FetchError,
    ParseError,
    SourceNotFoundError,
    SyncError,
    SyncInProgressError,
)
from calsync.sync import engine
from calsync.sync.ics import fetch_ics, parse_ics
from calsync.sync.normalize import ImportMode
from calsync.sync.reconciler import SyncResult

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sources", tags=["sources"])


class SourceResponse(BaseModel):
    """Calendar source response model."""
    id: int
    kind: str
    name: str
    feed_url: Optional[str] = None
    selected_calendars: list[str] = []
    import_as: str
    target_quest_id: Optional[int] = None
    is_active: bool = True
    last_synced_at: Optional[str] = None
    last_error: Optional[str] = None
    sync_status: str = "idle"
    event_count: int = 0


class CreateFeedRequest(BaseModel):
    """Subscribe to an ICS feed."""
    url: str = Field(min_length=1)
    name: Optional[str] = None
    import_as: ImportMode = ImportMode.SMART
    target_quest_id: Optional[int] = None


class UpdateSourceRequest(BaseModel):
    name: Optional[str] = None
    import_as: Optional[ImportMode] = None
    target_quest_id: Optional[int] = None
    is_active: Optional[bool] = None


class UploadRequest(BaseModel):
    """One-time import of ICS file content."""
    content: str = Field(min_length=1)
    name: Optional[str] = None
    import_as: ImportMode = ImportMode.SMART
    target_quest_id: Optional[int] = None


class SourceSyncResponse(BaseModel):
    source: SourceResponse
    result: dict


def sync_error_to_http(e: SyncError) -> HTTPException:
    """Map engine errors onto HTTP errors; auth and setup problems are 400s."""
    if isinstance(e, SourceNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, SyncInProgressError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def sync_response(result: SyncResult) -> dict:
    """Result body plus the capped error summary also stored as last_error."""
    body = result.as_response()
    body["errorSummary"] = engine.summarize_errors(result.errors)
    return body


def source_response(row: dict, event_count: int = 0) -> SourceResponse:
    return SourceResponse(
        id=row["id"],
        kind=row["kind"],
        name=row["name"],
        feed_url=row["feed_url"],
        selected_calendars=json.loads(row["selected_calendars"] or "[]"),
        import_as=row["import_as"],
        target_quest_id=row["target_quest_id"],
        is_active=bool(row["is_active"]),
        last_synced_at=row["last_synced_at"],
        last_error=row["last_error"],
        sync_status=row["sync_status"],
        event_count=event_count,
    )


async def verify_quest(user_id: int, quest_id: Optional[int]) -> None:
    """Reject target quests the user does not own."""
    if quest_id is None:
        return
    db = await get_database()
    cursor = await db.execute(
        "SELECT id FROM quests WHERE id = ? AND user_id = ?", (quest_id, user_id)
    )
    if not await cursor.fetchone():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Target quest not found"
        )


async def get_owned_source(source_id: int, user_id: int) -> dict:
    source = await engine.get_source(source_id)
    if not source or source["user_id"] != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Calendar source not found"
        )
    return source


@router.get("", response_model=list[SourceResponse])
async def list_sources(user: User = Depends(get_current_user)):
    """List the current user's calendar sources."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT cs.*, COUNT(ie.id) AS event_count
           FROM calendar_sources cs
           LEFT JOIN imported_events ie ON ie.source_id = cs.id
           WHERE cs.user_id = ?
           GROUP BY cs.id
           ORDER BY cs.created_at, cs.id""",
        (user.id,)
    )
    rows = await cursor.fetchall()
    return [source_response(dict(row), row["event_count"]) for row in rows]


@router.post("", response_model=SourceSyncResponse, status_code=status.HTTP_201_CREATED)
async def subscribe_feed(request: CreateFeedRequest, user: User = Depends(get_current_user)):
    """Subscribe to an ICS feed and run its first sync."""
    await verify_quest(user.id, request.target_quest_id)

    url = request.url.strip()
    if url.startswith("webcal://"):
        url = "https://" + url[len("webcal://"):]

    try:
        text = await fetch_ics(url)
        parsed = parse_ics(text)
    except (FetchError, ParseError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    source = await engine.create_source(
        user.id,
        engine.ICS_FEED,
        (request.name or "").strip() or parsed.name or "Calendar Feed",
        import_as=request.import_as.value,
        feed_url=url,
        target_quest_id=request.target_quest_id,
    )

    try:
        # First pass reuses the document fetched for validation
        result = await engine.sync_source(source["id"], timezone=user.timezone, ics_text=text)
    except SyncError as e:
        raise sync_error_to_http(e)

    return SourceSyncResponse(
        source=source_response(await engine.get_source(source["id"])),
        result=sync_response(result),
    )


@router.post("/upload", response_model=SourceSyncResponse, status_code=status.HTTP_201_CREATED)
async def upload_ics(request: UploadRequest, user: User = Depends(get_current_user)):
    """One-time import of an ICS file."""
    await verify_quest(user.id, request.target_quest_id)

    try:
        source, result = await engine.import_ics_upload(
            user.id,
            request.content,
            import_as=request.import_as.value,
            target_quest_id=request.target_quest_id,
            name=request.name,
            timezone=user.timezone,
        )
    except SyncError as e:
        raise sync_error_to_http(e)

    return SourceSyncResponse(
        source=source_response(await engine.get_source(source["id"])),
        result=sync_response(result),
    )


@router.patch("/{source_id}", response_model=SourceResponse)
async def update_source(
    source_id: int,
    request: UpdateSourceRequest,
    user: User = Depends(get_current_user),
):
    """Rename, re-target, or pause/resume a source."""
    await get_owned_source(source_id, user.id)

    updates = request.model_dump(exclude_unset=True)
    # Only the target quest may be cleared
    updates = {
        column: value for column, value in updates.items()
        if value is not None or column == "target_quest_id"
    }
    if "target_quest_id" in updates:
        await verify_quest(user.id, updates["target_quest_id"])
    if "name" in updates:
        name = (updates["name"] or "").strip()
        if not name:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Name cannot be empty"
            )
        updates["name"] = name
    if updates.get("import_as") is not None:
        updates["import_as"] = updates["import_as"].value

    if updates:
        updates["updated_at"] = datetime.utcnow().isoformat()
        db = await get_database()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        async with get_write_lock():
            await db.execute(
                f"UPDATE calendar_sources SET {assignments} WHERE id = ?",
                (*updates.values(), source_id)
            )
            await db.commit()

    return source_response(await engine.get_source(source_id))


@router.delete("/{source_id}")
async def delete_source(source_id: int, user: User = Depends(get_current_user)):
    """Disconnect a source and delete everything it imported."""
    try:
        summary = await engine.delete_source(source_id, user_id=user.id)
    except SyncError as e:
        raise sync_error_to_http(e)

    return {"status": "ok", "message": "Calendar source disconnected", **summary}


@router.post("/{source_id}/sync")
async def sync_source(source_id: int, user: User = Depends(get_current_user)):
    """Run one sync pass for a source."""
    try:
        result = await engine.sync_source(source_id, timezone=user.timezone, user_id=user.id)
    except SyncError as e:
        raise sync_error_to_http(e)

    return sync_response(result)

"""Sync control and log API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from calsync.api.sources import sync_response
from calsync.auth.session import User, get_current_user
from calsync.database import get_database
from calsync.sync.engine import combine_results, sync_user_sources

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


class SyncLogEntry(BaseModel):
    """Sync log entry."""
    id: int
    source_id: Optional[int] = None
    source_name: Optional[str] = None
    action: str
    status: str
    details: Optional[str] = None
    created_at: str


class SyncLogResponse(BaseModel):
    entries: list[SyncLogEntry]
    total: int
    page: int
    page_size: int


@router.post("")
async def sync_all_sources(user: User = Depends(get_current_user)):
    """Sync every active source of the current user."""
    results = await sync_user_sources(user.id, timezone=user.timezone)
    body = sync_response(combine_results(results))
    body["sources"] = {str(source_id): sync_response(result) for source_id, result in results.items()}
    return body


@router.get("/log", response_model=SyncLogResponse)
async def get_sync_log(
    user: User = Depends(get_current_user),
    page: int = 1,
    page_size: int = 50,
    source_id: Optional[int] = None,
    status_filter: Optional[str] = None,
):
    """Get sync activity log for current user."""
    db = await get_database()
    page = max(page, 1)
    page_size = min(max(page_size, 1), 200)

    where = " WHERE sl.user_id = ?"
    params: list = [user.id]

    if source_id:
        where += " AND sl.source_id = ?"
        params.append(source_id)

    if status_filter:
        where += " AND sl.status = ?"
        params.append(status_filter)

    cursor = await db.execute(f"SELECT COUNT(*) FROM sync_log sl{where}", params)
    total = (await cursor.fetchone())[0]

    cursor = await db.execute(
        f"""SELECT sl.*, cs.name AS source_name
            FROM sync_log sl
            LEFT JOIN calendar_sources cs ON sl.source_id = cs.id
            {where}
            ORDER BY sl.created_at DESC, sl.id DESC LIMIT ? OFFSET ?""",
        [*params, page_size, (page - 1) * page_size]
    )
    rows = await cursor.fetchall()

    entries = [
        SyncLogEntry(
            id=row["id"],
            source_id=row["source_id"],
            source_name=row["source_name"],
            action=row["action"],
            status=row["status"],
            details=row["details"],
            created_at=row["created_at"],
        )
        for row in rows
    ]

    return SyncLogResponse(entries=entries, total=total, page=page, page_size=page_size)

"""Tests for the sources, sync and Google API endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi import HTTPException

from calsync.auth.session import User
from calsync.database import get_database
from calsync.errors import FetchError
from calsync.sync.ics import parse_ics

FEED = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Test//EN
X-WR-CALNAME:Chemistry 101
BEGIN:VEVENT
UID:quiz@chem.example
SUMMARY:Quiz
DTSTART;VALUE=DATE:20250502
END:VEVENT
END:VCALENDAR
"""


@pytest.fixture(autouse=True)
def frozen_now(monkeypatch):
    monkeypatch.setattr(
        "calsync.sync.engine.utc_now", lambda: datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
    )


@pytest.fixture
def feed(monkeypatch):
    state = {"text": FEED, "urls": []}

    async def fake_fetch_and_parse(url):
        state["urls"].append(url)
        if state["text"] is None:
            raise FetchError("Calendar feed not found. Please check the URL.", status_code=404)
        return parse_ics(state["text"])

    async def fake_fetch(url):
        state["urls"].append(url)
        if state["text"] is None:
            raise FetchError("Calendar feed not found. Please check the URL.", status_code=404)
        return state["text"]

    monkeypatch.setattr("calsync.api.sources.fetch_ics", fake_fetch)
    monkeypatch.setattr("calsync.sync.engine.fetch_and_parse_ics", fake_fetch_and_parse)
    return state


async def _insert_user(email: str = "api@example.com") -> User:
    db = await get_database()
    cursor = await db.execute(
        "INSERT INTO users (email, display_name) VALUES (?, ?) RETURNING id",
        (email, "Api User"),
    )
    row = await cursor.fetchone()
    await db.commit()
    return User(id=row["id"], email=email, display_name="Api User", timezone="UTC")


async def _insert_quest(user_id: int) -> int:
    db = await get_database()
    cursor = await db.execute(
        "INSERT INTO quests (user_id, title) VALUES (?, 'Chemistry') RETURNING id", (user_id,)
    )
    row = await cursor.fetchone()
    await db.commit()
    return row["id"]


async def _subscribe(user: User, **kwargs):
    from calsync.api.sources import CreateFeedRequest, subscribe_feed

    request = CreateFeedRequest(url="webcal://chem.example/feed.ics", **kwargs)
    return await subscribe_feed(request, user)


@pytest.mark.asyncio
async def test_subscribe_feed_runs_first_sync(test_db, feed):
    from calsync.api.sources import list_sources

    user = await _insert_user()
    response = await _subscribe(user)

    assert feed["urls"][0] == "https://chem.example/feed.ics"
    assert response.source.name == "Chemistry 101"
    assert response.source.kind == "ics_feed"
    assert response.source.last_synced_at is not None
    assert response.result["tasksCreated"] == 1

    sources = await list_sources(user)
    assert [(s.id, s.event_count) for s in sources] == [(response.source.id, 1)]


@pytest.mark.asyncio
async def test_subscribe_feed_downloads_once(test_db, feed):
    user = await _insert_user()

    await _subscribe(user)

    assert feed["urls"] == ["https://chem.example/feed.ics"]


@pytest.mark.asyncio
async def test_subscribe_feed_rejects_unreachable_feed(test_db, feed):
    from calsync.api.sources import list_sources

    user = await _insert_user()
    feed["text"] = None

    with pytest.raises(HTTPException) as exc_info:
        await _subscribe(user)

    assert exc_info.value.status_code == 400
    assert "not found" in exc_info.value.detail
    assert await list_sources(user) == []


@pytest.mark.asyncio
async def test_subscribe_feed_rejects_foreign_quest(test_db, feed):
    user = await _insert_user()
    other = await _insert_user("other@example.com")
    quest_id = await _insert_quest(other.id)

    with pytest.raises(HTTPException) as exc_info:
        await _subscribe(user, target_quest_id=quest_id)

    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_update_source(test_db, feed):
    from calsync.api.sources import UpdateSourceRequest, update_source
    from calsync.sync.normalize import ImportMode

    user = await _insert_user()
    source_id = (await _subscribe(user)).source.id
    quest_id = await _insert_quest(user.id)
    before = datetime.utcnow()

    updated = await update_source(
        source_id,
        UpdateSourceRequest(name=" Chem ", is_active=False, import_as=ImportMode.TASKS, target_quest_id=quest_id),
        user,
    )

    assert updated.name == "Chem"
    assert updated.is_active is False
    assert updated.import_as == "tasks"
    assert updated.target_quest_id == quest_id

    db = await get_database()
    cursor = await db.execute("SELECT updated_at FROM calendar_sources WHERE id = ?", (source_id,))
    updated_at = (await cursor.fetchone())["updated_at"]
    # Same ISO form as the engine's timestamps
    assert "T" in updated_at
    assert datetime.fromisoformat(updated_at) >= before

    with pytest.raises(HTTPException) as exc_info:
        await update_source(source_id, UpdateSourceRequest(name="  "), user)
    assert exc_info.value.status_code == 400

    other = await _insert_user("other@example.com")
    with pytest.raises(HTTPException) as exc_info:
        await update_source(source_id, UpdateSourceRequest(is_active=True), other)
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_sync_route_maps_errors(test_db, feed):
    from calsync.api.sources import sync_source

    user = await _insert_user()
    source_id = (await _subscribe(user)).source.id

    body = await sync_source(source_id, user)
    assert body["tasksCreated"] == 0
    assert body["eventsProcessed"] == 1
    assert body["errorSummary"] is None

    with pytest.raises(HTTPException) as exc_info:
        await sync_source(9999, user)
    assert exc_info.value.status_code == 404

    db = await get_database()
    await db.execute(
        "UPDATE calendar_sources SET sync_status = 'syncing', sync_started_at = ? WHERE id = ?",
        (datetime.utcnow().isoformat(), source_id),
    )
    await db.commit()
    with pytest.raises(HTTPException) as exc_info:
        await sync_source(source_id, user)
    assert exc_info.value.status_code == 409

    await db.execute("UPDATE calendar_sources SET sync_status = 'idle', is_active = FALSE WHERE id = ?", (source_id,))
    await db.commit()
    with pytest.raises(HTTPException) as exc_info:
        await sync_source(source_id, user)
    assert exc_info.value.status_code == 400



def test_sync_response_caps_error_summary():
    from calsync.api.sources import sync_response
    from calsync.sync.reconciler import SyncResult

    result = SyncResult(errors=[f"Event {i}: bad date" for i in range(7)])

    body = sync_response(result)

    assert len(body["errors"]) == 7
    assert body["errorSummary"].startswith("Event 0: bad date; Event 1: bad date")
    assert "Event 5" not in body["errorSummary"]
    assert body["errorSummary"].endswith("(+2 more)")

@pytest.mark.asyncio
async def test_delete_source_route(test_db, feed):
    from calsync.api.sources import delete_source, list_sources

    user = await _insert_user()
    source_id = (await _subscribe(user)).source.id

    body = await delete_source(source_id, user)

    assert body["tasks_deleted"] == 1
    assert await list_sources(user) == []
    with pytest.raises(HTTPException) as exc_info:
        await delete_source(source_id, user)
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_upload_route(test_db):
    from calsync.api.sources import UploadRequest, upload_ics

    user = await _insert_user()

    response = await upload_ics(UploadRequest(content=FEED, name="Syllabus"), user)
    assert response.source.kind == "ics_upload"
    assert response.source.name == "Syllabus"
    assert response.result["tasksCreated"] == 1

    with pytest.raises(HTTPException) as exc_info:
        await upload_ics(UploadRequest(content="not a calendar"), user)
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_sync_all_and_log(test_db, feed):
    from calsync.api.sync import get_sync_log, sync_all_sources

    user = await _insert_user()
    source_id = (await _subscribe(user)).source.id

    body = await sync_all_sources(user)
    assert body["eventsProcessed"] == 1
    assert body["errors"] == []
    assert body["errorSummary"] is None
    assert str(source_id) in body["sources"]
    assert body["sources"][str(source_id)]["errorSummary"] is None

    log = await get_sync_log(user=user, page=1, page_size=10, source_id=None, status_filter=None)
    assert log.total == 2
    assert all(entry.source_name == "Chemistry 101" for entry in log.entries)

    filtered = await get_sync_log(user=user, page=1, page_size=10, source_id=None, status_filter="failure")
    assert filtered.total == 0


# Google connection endpoints


async def _insert_connection(user_id: int) -> int:
    db = await get_database()
    cursor = await db.execute(
        """INSERT INTO provider_connections (user_id, email, access_token_encrypted)
           VALUES (?, ?, ?) RETURNING id""",
        (user_id, "me@gmail.com", b"encrypted"),
    )
    row = await cursor.fetchone()
    await db.commit()
    return row["id"]


@pytest.mark.asyncio
async def test_google_status(test_db):
    from calsync.api.google import get_connection_status

    user = await _insert_user()

    status = await get_connection_status(user)
    assert status.configured is True
    assert status.connected is False

    await _insert_connection(user.id)
    status = await get_connection_status(user)
    assert status.connected is True
    assert status.email == "me@gmail.com"
    assert status.source.kind == "remote_api"


@pytest.mark.asyncio
async def test_google_calendar_selection(test_db, monkeypatch):
    from calsync.api.google import UpdateSelectionRequest, list_remote_calendars, update_calendar_selection

    user = await _insert_user()

    with pytest.raises(HTTPException) as exc_info:
        await update_calendar_selection(UpdateSelectionRequest(calendar_ids=["a"]), user)
    assert exc_info.value.status_code == 404

    await _insert_connection(user.id)

    class FakeClient:
        def __init__(self, access_token):
            assert access_token == "access-token"

        def list_calendars(self):
            return [
                {"id": "a@example.com", "summary": "A", "description": None, "primary": True, "background_color": None},
                {"id": "b@example.com", "summary": "B", "description": None, "primary": False, "background_color": None},
            ]

    async def fake_token(connection, margin_minutes=None):
        return "access-token"

    monkeypatch.setattr("calsync.api.google.GoogleCalendarClient", FakeClient)
    monkeypatch.setattr("calsync.api.google.get_valid_access_token", fake_token)

    source = await update_calendar_selection(
        UpdateSelectionRequest(calendar_ids=["b@example.com", "b@example.com"]), user
    )
    assert source.selected_calendars == ["b@example.com"]

    calendars = await list_remote_calendars(user)
    assert [(c.id, c.selected) for c in calendars] == [("a@example.com", False), ("b@example.com", True)]


@pytest.mark.asyncio
async def test_google_calendars_require_valid_token(test_db, monkeypatch):
    from calsync.api.google import list_remote_calendars

    user = await _insert_user()
    await _insert_connection(user.id)

    async def no_token(connection, margin_minutes=None):
        return None

    monkeypatch.setattr("calsync.api.google.get_valid_access_token", no_token)

    with pytest.raises(HTTPException) as exc_info:
        await list_remote_calendars(user)
    assert exc_info.value.status_code == 400
    assert "reconnect" in exc_info.value.detail


@pytest.mark.asyncio
async def test_google_disconnect(test_db):
    from calsync.api.google import disconnect_google

    user = await _insert_user()
    await _insert_connection(user.id)

    body = await disconnect_google(user)

    assert body["sources_deleted"] == 0
    db = await get_database()
    cursor = await db.execute("SELECT COUNT(*) FROM provider_connections")
    assert (await cursor.fetchone())[0] == 0


"""Tests for the periodic sync job and token refresh."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from calsync.database import get_database


async def _insert_user() -> int:
    db = await get_database()
    cursor = await db.execute("INSERT INTO users (email) VALUES ('jobs@example.com') RETURNING id")
    row = await cursor.fetchone()
    await db.commit()
    return row["id"]


async def _insert_source(
    user_id: int,
    kind: str = "ics_feed",
    last_synced_at: str | None = None,
    is_active: bool = True,
) -> int:
    db = await get_database()
    cursor = await db.execute(
        """INSERT INTO calendar_sources (user_id, kind, name, feed_url, is_active, last_synced_at)
           VALUES (?, ?, 'Source', 'https://example.com/cal.ics', ?, ?)
           RETURNING id""",
        (user_id, kind, is_active, last_synced_at),
    )
    row = await cursor.fetchone()
    await db.commit()
    return row["id"]


def _minutes_ago(minutes: int) -> str:
    return (datetime.utcnow() - timedelta(minutes=minutes)).isoformat()


@pytest.mark.asyncio
async def test_run_periodic_sync_only_syncs_due_sources(test_db, monkeypatch):
    from calsync.errors import SyncInProgressError
    from calsync.jobs.sync_job import run_periodic_sync

    user_id = await _insert_user()
    never = await _insert_source(user_id)
    stale = await _insert_source(user_id, kind="remote_api", last_synced_at=_minutes_ago(30))
    await _insert_source(user_id, last_synced_at=_minutes_ago(2))
    await _insert_source(user_id, kind="ics_upload")
    await _insert_source(user_id, is_active=False)
    busy = await _insert_source(user_id, last_synced_at=_minutes_ago(60))

    synced = []

    async def fake_sync_source(source_id, **_kwargs):
        synced.append(source_id)
        if source_id == busy:
            raise SyncInProgressError("busy")
        if source_id == never:
            raise RuntimeError("boom")

    monkeypatch.setattr("calsync.sync.engine.sync_source", fake_sync_source)

    await run_periodic_sync()

    assert sorted(synced) == sorted([never, stale, busy])

    db = await get_database()
    cursor = await db.execute("SELECT COUNT(*) FROM job_locks")
    assert (await cursor.fetchone())[0] == 0


@pytest.mark.asyncio
async def test_run_periodic_sync_skips_when_locked(test_db, monkeypatch):
    from calsync.jobs.sync_job import acquire_job_lock, release_job_lock, run_periodic_sync

    user_id = await _insert_user()
    await _insert_source(user_id)
    calls = []

    async def fake_sync_source(source_id, **_kwargs):
        calls.append(source_id)

    monkeypatch.setattr("calsync.sync.engine.sync_source", fake_sync_source)

    assert await acquire_job_lock("periodic_sync") is True
    assert await acquire_job_lock("periodic_sync") is False

    await run_periodic_sync()
    assert calls == []

    await release_job_lock("periodic_sync")
    await run_periodic_sync()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_stale_job_lock_is_taken_over(test_db):
    from calsync.jobs.sync_job import acquire_job_lock

    db = await get_database()
    await db.execute(
        "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES ('periodic_sync', ?, 'worker')",
        (_minutes_ago(45),),
    )
    await db.commit()

    assert await acquire_job_lock("periodic_sync") is True


@pytest.mark.asyncio
async def test_refresh_expiring_tokens(test_db, monkeypatch):
    from calsync.jobs.sync_job import refresh_expiring_tokens

    user_id = await _insert_user()
    db = await get_database()
    soon = (datetime.utcnow() + timedelta(minutes=10)).isoformat()
    later = (datetime.utcnow() + timedelta(hours=5)).isoformat()
    cursor = await db.execute(
        """INSERT INTO provider_connections (user_id, access_token_encrypted, token_expires_at)
           VALUES (?, ?, ?) RETURNING id""",
        (user_id, b"a", soon),
    )
    expiring_id = (await cursor.fetchone())["id"]
    cursor = await db.execute("INSERT INTO users (email) VALUES ('later@example.com') RETURNING id")
    other_user = (await cursor.fetchone())["id"]
    await db.execute(
        """INSERT INTO provider_connections (user_id, access_token_encrypted, token_expires_at)
           VALUES (?, ?, ?)""",
        (other_user, b"a", later),
    )
    await db.commit()

    refreshed = []

    async def fake_get_valid_access_token(connection, margin_minutes=None):
        refreshed.append((connection["id"], margin_minutes))
        return None

    monkeypatch.setattr("calsync.auth.google.get_valid_access_token", fake_get_valid_access_token)

    await refresh_expiring_tokens()

    assert refreshed == [(expiring_id, 35)]
    cursor = await db.execute("SELECT action, status FROM sync_log WHERE user_id = ?", (user_id,))
    assert [tuple(row) for row in await cursor.fetchall()] == [("token_refresh", "failure")]


def test_scheduler_registers_jobs(monkeypatch):
    from calsync.jobs import scheduler as scheduler_module

    started = []
    monkeypatch.setattr(
        scheduler_module.AsyncIOScheduler, "start", lambda self, *args, **kwargs: started.append(self)
    )

    scheduler = scheduler_module.setup_scheduler()

    assert started == [scheduler]
    assert {job.id for job in scheduler.get_jobs()} == {"periodic_sync", "token_refresh"}
    scheduler_module._scheduler = None

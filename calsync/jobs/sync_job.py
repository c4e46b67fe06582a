"""Periodic sync job."""

import logging
from datetime import datetime, timedelta

import aiosqlite

from calsync.config import get_settings
from calsync.database import get_database, log_sync_event
from calsync.errors import SyncInProgressError

logger = logging.getLogger(__name__)


async def run_periodic_sync() -> None:
    """Sync every active feed and remote source not synced within the cooldown."""
    if not await acquire_job_lock("periodic_sync"):
        logger.debug("Periodic sync already running, skipping")
        return

    try:
        settings = get_settings()
        db = await get_database()
        cutoff = (
            datetime.utcnow() - timedelta(minutes=settings.auto_sync_cooldown_minutes)
        ).isoformat()

        cursor = await db.execute(
            """SELECT id FROM calendar_sources
               WHERE is_active = TRUE AND kind IN ('ics_feed', 'remote_api')
               AND (last_synced_at IS NULL OR last_synced_at < ?)
               ORDER BY last_synced_at IS NOT NULL, last_synced_at""",
            (cutoff,)
        )
        sources = await cursor.fetchall()

        if not sources:
            logger.debug("No calendar sources due for sync")
            return

        logger.info(f"Running periodic sync for {len(sources)} sources")

        from calsync.sync.engine import sync_source

        for source in sources:
            try:
                await sync_source(source["id"])
            except SyncInProgressError:
                logger.debug(f"Source {source['id']} is already syncing")
            except Exception as e:
                logger.error(f"Error syncing source {source['id']}: {e}")

        logger.info("Periodic sync completed")

    finally:
        await release_job_lock("periodic_sync")


async def refresh_expiring_tokens() -> None:
    """Refresh access tokens that would expire before the next run."""
    settings = get_settings()
    db = await get_database()

    window = settings.token_refresh_minutes + settings.token_refresh_margin_minutes
    threshold = (datetime.utcnow() + timedelta(minutes=window)).isoformat()

    cursor = await db.execute(
        """SELECT * FROM provider_connections
           WHERE token_expires_at IS NOT NULL AND token_expires_at < ?""",
        (threshold,)
    )
    expiring = [dict(row) for row in await cursor.fetchall()]

    if not expiring:
        return

    logger.info(f"Refreshing {len(expiring)} expiring tokens")

    from calsync.auth.google import get_valid_access_token

    for connection in expiring:
        token = await get_valid_access_token(connection, margin_minutes=window)
        if token:
            logger.debug(f"Refreshed token for connection {connection['id']}")
            continue

        logger.warning(f"Connection {connection['id']} needs to be reconnected")
        await log_sync_event(
            connection["user_id"],
            None,
            "token_refresh",
            "failure",
            "Failed to refresh access token. Please reconnect Google Calendar.",
        )


async def acquire_job_lock(job_name: str, timeout_minutes: int = 30) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    """
    db = await get_database()
    now = datetime.utcnow()
    cutoff = (now - timedelta(minutes=timeout_minutes)).isoformat()

    await db.execute(
        "DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?",
        (job_name, cutoff)
    )
    await db.commit()

    try:
        await db.execute(
            """INSERT INTO job_locks (job_name, locked_at, locked_by)
               VALUES (?, ?, ?)""",
            (job_name, now.isoformat(), "worker")
        )
        await db.commit()
        return True
    except aiosqlite.IntegrityError:
        await db.rollback()
        return False


async def release_job_lock(job_name: str) -> None:
    """Release a job lock."""
    db = await get_database()
    await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
    await db.commit()

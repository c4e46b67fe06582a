"""Sync orchestration: one pass per calendar source."""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

import aiosqlite

from calsync import entities
from calsync.auth.google import get_connection, get_connection_by_id, get_valid_access_token
from calsync.config import get_settings
from calsync.database import get_database, get_write_lock, log_sync_event
from calsync.errors import (
    AuthError,
    FetchError,
    ParseError,
    SourceNotFoundError,
    SourceSetupError,
    SyncInProgressError,
)
from calsync.sync.cleanup import cleanup_orphans
from calsync.sync.google_calendar import GoogleCalendarClient
from calsync.sync.ics import fetch_and_parse_ics, parse_ics
from calsync.sync.normalize import (
    CanonicalEvent,
    ImportMode,
    normalize_google_event,
    normalize_ics_event,
)
from calsync.sync.reconciler import Reconciler, SyncResult
from calsync.sync.tracking import TrackingStore
from calsync.utils.dates import sync_window, to_local, utc_now

logger = logging.getLogger(__name__)

ICS_FEED = "ics_feed"
ICS_UPLOAD = "ics_upload"
REMOTE_API = "remote_api"

# Sources whose fetch returns the complete upstream set
FULL_PULL_KINDS = {ICS_FEED}


def summarize_errors(errors: list[str], limit: Optional[int] = None) -> Optional[str]:
    """First few errors joined, with a "+N more" suffix for the rest."""
    if not errors:
        return None
    if limit is None:
        limit = get_settings().error_summary_limit
    summary = "; ".join(errors[:limit])
    if len(errors) > limit:
        summary += f" (+{len(errors) - limit} more)"
    return summary


async def get_source(source_id: int) -> Optional[dict]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM calendar_sources WHERE id = ?", (source_id,))
    row = await cursor.fetchone()
    return dict(row) if row else None


async def acquire_source_lock(db: aiosqlite.Connection, source_id: int) -> bool:
    """
    Compare-and-set the source's sync flag from idle to syncing.

    A flag held longer than the lock timeout is considered abandoned and is
    taken over.
    """
    settings = get_settings()
    now = datetime.utcnow()
    cutoff = (now - timedelta(minutes=settings.sync_lock_timeout_minutes)).isoformat()

    async with get_write_lock():
        cursor = await db.execute(
            """UPDATE calendar_sources SET sync_status = 'syncing', sync_started_at = ?
               WHERE id = ? AND (
                   sync_status != 'syncing' OR sync_started_at IS NULL OR sync_started_at < ?
               )""",
            (now.isoformat(), source_id, cutoff)
        )
        await db.commit()
    return cursor.rowcount == 1


async def release_source_lock(db: aiosqlite.Connection, source_id: int) -> None:
    async with get_write_lock():
        await db.execute(
            "UPDATE calendar_sources SET sync_status = 'idle', sync_started_at = NULL WHERE id = ?",
            (source_id,)
        )
        await db.commit()


async def _record_outcome(
    db: aiosqlite.Connection,
    source_id: int,
    error: Optional[str],
    synced: bool,
) -> None:
    now = datetime.utcnow().isoformat()
    if synced:
        await db.execute(
            """UPDATE calendar_sources SET last_synced_at = ?, last_error = ?, updated_at = ?
               WHERE id = ?""",
            (now, error, now, source_id)
        )
    else:
        await db.execute(
            "UPDATE calendar_sources SET last_error = ?, updated_at = ? WHERE id = ?",
            (error, now, source_id)
        )
    await db.commit()


async def resolve_timezone(db: aiosqlite.Connection, user_id: int, override: Optional[str]) -> str:
    if override:
        return override
    cursor = await db.execute("SELECT timezone FROM users WHERE id = ?", (user_id,))
    row = await cursor.fetchone()
    if row and row["timezone"]:
        return row["timezone"]
    return get_settings().default_timezone


async def resolve_target_quest(db: aiosqlite.Connection, source: dict) -> Optional[int]:
    """The quest imported tasks go to; schedule-only sources need none."""
    if source["target_quest_id"]:
        return source["target_quest_id"]
    if source["import_as"] == ImportMode.SCHEDULE.value:
        return None
    return await entities.get_or_create_default_quest(
        db, source["user_id"], get_settings().default_quest_title
    )


def _dedupe(events: list[CanonicalEvent]) -> list[CanonicalEvent]:
    seen: dict[str, CanonicalEvent] = {}
    for event in events:
        if event.external_uid in seen:
            logger.debug(f"Duplicate upstream event {event.external_uid}, keeping first")
            continue
        seen[event.external_uid] = event
    return list(seen.values())


async def _collect_ics_events(
    source: dict,
    user_timezone: str,
    ics_text: Optional[str],
    result: SyncResult,
) -> tuple[list[CanonicalEvent], bool]:
    """Events of an ICS source, and whether the document was read successfully."""
    try:
        if ics_text is not None:
            parsed = parse_ics(ics_text)
        else:
            parsed = await fetch_and_parse_ics(source["feed_url"])
    except (FetchError, ParseError) as e:
        logger.warning(f"ICS source {source['id']} could not be read: {e}")
        result.errors.append(str(e))
        return [], False

    result.calendars_processed += 1
    events = []
    for raw in parsed.events:
        try:
            event = normalize_ics_event(raw, source["id"], user_timezone)
        except (ValueError, TypeError, OverflowError) as e:
            logger.warning(f"Skipping unreadable event {raw.uid}: {e}")
            continue
        if event is not None:
            events.append(event)
    return events, True


async def _collect_remote_events(
    source: dict,
    user_timezone: str,
    result: SyncResult,
) -> list[CanonicalEvent]:
    """Events of every selected remote calendar; failing calendars are skipped."""
    settings = get_settings()

    connection = None
    if source["connection_id"]:
        connection = await get_connection_by_id(source["connection_id"])
    if not connection:
        raise SourceSetupError("No Google Calendar connection found")

    calendar_ids = json.loads(source["selected_calendars"] or "[]")
    if not calendar_ids:
        raise SourceSetupError("No calendars selected for sync")

    access_token = await get_valid_access_token(connection)
    if not access_token:
        raise AuthError("Failed to refresh access token. Please reconnect Google Calendar.")

    client = GoogleCalendarClient(access_token)
    time_min, time_max = sync_window(
        utc_now(), settings.sync_window_past_days, settings.sync_window_future_months
    )

    events = []
    for calendar_id in calendar_ids:
        try:
            raw_events = client.list_events(
                calendar_id, time_min, time_max, page_size=settings.remote_page_size
            )
        except FetchError as e:
            result.errors.append(str(e))
            continue
        except Exception as e:
            logger.exception(f"Unexpected failure fetching calendar {calendar_id}: {e}")
            result.errors.append(f"Failed to process calendar: {calendar_id}")
            continue

        result.calendars_processed += 1
        for raw in raw_events:
            try:
                event = normalize_google_event(raw, calendar_id, user_timezone)
            except (ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping unreadable event {raw.get('id')}: {e}")
                continue
            if event is not None:
                events.append(event)

    return events


async def _collect_events(
    source: dict,
    user_timezone: str,
    ics_text: Optional[str],
    result: SyncResult,
) -> tuple[list[CanonicalEvent], bool]:
    """
    Network side of a pass; no writes to the shared connection.

    The flag tells whether the upstream data was read at all, which gates both
    deletion of vanished events and stamping ``last_synced_at``.
    """
    if source["kind"] == REMOTE_API:
        events = await _collect_remote_events(source, user_timezone, result)
        read_ok = result.calendars_processed > 0
    else:
        events, read_ok = await _collect_ics_events(source, user_timezone, ics_text, result)
    return _dedupe(events), read_ok


async def _apply_events(
    db: aiosqlite.Connection,
    source: dict,
    user_timezone: str,
    events: list[CanonicalEvent],
    read_ok: bool,
    result: SyncResult,
) -> None:
    """Write side of a pass; callers hold the database write lock."""
    settings = get_settings()
    quest_id = await resolve_target_quest(db, source)
    tracking = await TrackingStore(db, source["user_id"], source["id"]).load()

    await cleanup_orphans(db, source["user_id"], source["id"], quest_id)

    reconciler = Reconciler(db, source, quest_id, tracking, result)
    # Feed documents carry their whole history; old events are left alone
    oldest = to_local(utc_now(), user_timezone).date() - timedelta(days=settings.sync_window_past_days)
    seen_uids = set()

    for event in events:
        seen_uids.add(event.external_uid)
        if source["kind"] != REMOTE_API and event.date < oldest:
            continue
        await reconciler.process(event)

    if source["kind"] in FULL_PULL_KINDS and read_ok:
        await reconciler.delete_vanished(seen_uids)


async def sync_source(
    source_id: int,
    timezone: Optional[str] = None,
    ics_text: Optional[str] = None,
    user_id: Optional[int] = None,
) -> SyncResult:
    """
    Run one sync pass for a source.

    ``ics_text`` replaces the network fetch for ICS sources: it is required
    for uploads and lets a feed reuse a document that was just downloaded.

    Per-event and per-calendar failures end up in ``result.errors``. Only
    setup failures (unknown or paused source, pass already running, missing
    connection or calendar selection, unrefreshable token) raise.

    Fetching runs concurrently with other passes; everything that writes runs
    under the database write lock, since all passes share one connection.
    """
    db = await get_database()
    source = await get_source(source_id)

    if not source or (user_id is not None and source["user_id"] != user_id):
        raise SourceNotFoundError(f"Calendar source {source_id} not found")
    if not source["is_active"]:
        raise SourceSetupError("Calendar source is paused")
    if source["kind"] == ICS_UPLOAD and ics_text is None:
        raise SourceSetupError("Uploaded calendars can only be synced with new file content")

    if not await acquire_source_lock(db, source_id):
        logger.info(f"Sync already in progress for source {source_id}, skipping")
        raise SyncInProgressError(f"Sync already in progress for source {source_id}")

    result = SyncResult()
    try:
        user_timezone = await resolve_timezone(db, source["user_id"], timezone)
        events, read_ok = await _collect_events(source, user_timezone, ics_text, result)

        async with get_write_lock():
            try:
                await _apply_events(db, source, user_timezone, events, read_ok, result)
            except Exception:
                await db.rollback()
                raise

            # An unreadable upstream keeps the previous sync time so staleness shows
            await _record_outcome(db, source_id, summarize_errors(result.errors), synced=read_ok)
            await log_sync_event(
                source["user_id"],
                source_id,
                "sync",
                "partial" if result.errors else "success",
                json.dumps(result.as_response()),
            )
    except Exception as e:
        logger.exception(f"Sync failed for source {source_id}: {e}")
        async with get_write_lock():
            await _record_outcome(db, source_id, str(e), synced=False)
            await log_sync_event(
                source["user_id"], source_id, "sync", "failure", json.dumps({"error": str(e)})
            )
        raise
    finally:
        await release_source_lock(db, source_id)

    logger.info(
        f"Sync completed for source {source_id}: "
        f"{result.tasks_created + result.schedule_blocks_created} created, "
        f"{result.tasks_updated + result.schedule_blocks_updated} updated, "
        f"{result.tasks_deleted + result.schedule_blocks_deleted} deleted, "
        f"{len(result.errors)} error(s)"
    )
    return result


async def sync_user_sources(user_id: int, timezone: Optional[str] = None) -> dict[int, SyncResult]:
    """Sync every active, re-syncable source of a user; failures stay per source."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT id FROM calendar_sources
           WHERE user_id = ? AND is_active = TRUE AND kind != ?
           ORDER BY id""",
        (user_id, ICS_UPLOAD)
    )
    source_ids = [row["id"] for row in await cursor.fetchall()]

    results: dict[int, SyncResult] = {}
    for source_id in source_ids:
        try:
            results[source_id] = await sync_source(source_id, timezone=timezone)
        except Exception as e:
            logger.error(f"Error syncing source {source_id}: {e}")
            results[source_id] = SyncResult(errors=[str(e)])
    return results


def combine_results(results: dict[int, SyncResult]) -> SyncResult:
    combined = SyncResult()
    for result in results.values():
        combined.merge(result)
    return combined


async def create_source(
    user_id: int,
    kind: str,
    name: str,
    import_as: str = ImportMode.SMART.value,
    feed_url: Optional[str] = None,
    connection_id: Optional[int] = None,
    selected_calendars: Optional[list[str]] = None,
    target_quest_id: Optional[int] = None,
) -> dict:
    ImportMode(import_as)
    db = await get_database()
    async with get_write_lock():
        async with db.execute(
            """INSERT INTO calendar_sources
               (user_id, kind, name, feed_url, connection_id, selected_calendars,
                import_as, target_quest_id, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING *""",
            (
                user_id, kind, name, feed_url, connection_id,
                json.dumps(selected_calendars or []), import_as, target_quest_id,
                datetime.utcnow().isoformat(),
            )
        ) as cursor:
            row = await cursor.fetchone()
        await db.commit()
    logger.info(f"Created {kind} source {row['id']} for user {user_id}")
    return dict(row)


async def get_or_create_remote_source(user_id: int, connection_id: int) -> dict:
    """The remote_api source bound to a provider connection."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_sources
           WHERE user_id = ? AND kind = ? AND connection_id = ?
           ORDER BY id LIMIT 1""",
        (user_id, REMOTE_API, connection_id)
    )
    row = await cursor.fetchone()
    if row:
        return dict(row)
    return await create_source(
        user_id, REMOTE_API, "Google Calendar", connection_id=connection_id
    )


async def import_ics_upload(
    user_id: int,
    ics_text: str,
    import_as: str = ImportMode.SMART.value,
    target_quest_id: Optional[int] = None,
    name: Optional[str] = None,
    timezone: Optional[str] = None,
) -> tuple[dict, SyncResult]:
    """
    One-time import of uploaded ICS content.

    All uploads of a user share one ics_upload source, so uploading the same
    file twice updates rather than duplicates. Uploads are append-only:
    nothing is deleted because it is missing from a later file.

    Raises ParseError for content that is not a calendar.
    """
    ImportMode(import_as)
    parsed = parse_ics(ics_text)
    name = (name or "").strip()

    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_sources WHERE user_id = ? AND kind = ? ORDER BY id LIMIT 1",
        (user_id, ICS_UPLOAD)
    )
    row = await cursor.fetchone()

    if row is None:
        source = await create_source(
            user_id,
            ICS_UPLOAD,
            name or parsed.name or "Uploaded Calendar",
            import_as=import_as,
            target_quest_id=target_quest_id,
        )
    else:
        # Settings of the latest upload apply to it
        async with get_write_lock():
            await db.execute(
                """UPDATE calendar_sources
                   SET name = ?, import_as = ?, target_quest_id = ?, is_active = TRUE, updated_at = ?
                   WHERE id = ?""",
                (
                    name or row["name"], import_as, target_quest_id,
                    datetime.utcnow().isoformat(), row["id"],
                )
            )
            await db.commit()
        source = await get_source(row["id"])

    result = await sync_source(source["id"], timezone=timezone, ics_text=ics_text)
    return source, result


async def delete_source(source_id: int, user_id: Optional[int] = None) -> dict:
    """
    Disconnect a source: delete every entity it created, its tracking rows,
    then the source itself.
    """
    db = await get_database()
    source = await get_source(source_id)
    if not source or (user_id is not None and source["user_id"] != user_id):
        raise SourceNotFoundError(f"Calendar source {source_id} not found")

    summary = {"tasks_deleted": 0, "schedule_blocks_deleted": 0}

    async with get_write_lock():
        cursor = await db.execute(
            "SELECT created_as, created_id FROM imported_events WHERE source_id = ?",
            (source_id,)
        )
        for row in await cursor.fetchall():
            await entities.delete_entity(db, row["created_as"], row["created_id"])
            if row["created_as"] == entities.TASK:
                summary["tasks_deleted"] += 1
            else:
                summary["schedule_blocks_deleted"] += 1

        await db.execute("DELETE FROM imported_events WHERE source_id = ?", (source_id,))
        await db.execute("DELETE FROM calendar_sources WHERE id = ?", (source_id,))
        await db.commit()

        await log_sync_event(
            source["user_id"], source_id, "disconnect", "success", json.dumps(summary)
        )
    logger.info(f"Deleted source {source_id}: {summary}")
    return summary


async def disconnect_provider(user_id: int) -> dict:
    """Delete every remote source of the user's connection, then the connection."""
    db = await get_database()
    connection = await get_connection(user_id)
    summary = {"sources_deleted": 0, "tasks_deleted": 0, "schedule_blocks_deleted": 0}
    if not connection:
        return summary

    cursor = await db.execute(
        "SELECT id FROM calendar_sources WHERE connection_id = ?", (connection["id"],)
    )
    for row in await cursor.fetchall():
        deleted = await delete_source(row["id"])
        summary["sources_deleted"] += 1
        summary["tasks_deleted"] += deleted["tasks_deleted"]
        summary["schedule_blocks_deleted"] += deleted["schedule_blocks_deleted"]

    async with get_write_lock():
        await db.execute("DELETE FROM provider_connections WHERE id = ?", (connection["id"],))
        await db.commit()
    logger.info(f"Disconnected provider for user {user_id}: {summary}")
    return summary

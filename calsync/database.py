"""Database connection and schema management."""

import asyncio
import logging
from typing import Optional

import aiosqlite

from calsync.config import get_settings

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()

# Multi-statement writes (sync passes, cascades) share the one connection, so
# their commit/rollback boundaries must not interleave
_write_lock: Optional[asyncio.Lock] = None


SCHEMA = """
-- Users of the host application
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    display_name TEXT,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Task containers
CREATE TABLE IF NOT EXISTS quests (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    quest_id INTEGER REFERENCES quests(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    due_date TEXT,
    priority TEXT NOT NULL DEFAULT 'medium',
    completed BOOLEAN NOT NULL DEFAULT FALSE,
    xp_value INTEGER NOT NULL DEFAULT 10,
    deleted_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_tasks_quest_title
    ON tasks(quest_id, title, due_date) WHERE deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS schedule_blocks (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    days_of_week TEXT NOT NULL,
    location TEXT,
    start_date TEXT,
    end_date TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    CHECK (end_time > start_time)
);

CREATE INDEX IF NOT EXISTS idx_schedule_blocks_user ON schedule_blocks(user_id);

-- OAuth connections to a remote calendar provider (encrypted at rest)
CREATE TABLE IF NOT EXISTS provider_connections (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    provider TEXT NOT NULL DEFAULT 'google',
    email TEXT,
    access_token_encrypted BLOB NOT NULL,
    refresh_token_encrypted BLOB,
    token_expires_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(user_id)
);

-- Linked external calendars
CREATE TABLE IF NOT EXISTS calendar_sources (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    kind TEXT NOT NULL CHECK (kind IN ('ics_feed', 'ics_upload', 'remote_api')),
    name TEXT NOT NULL,
    feed_url TEXT,
    connection_id INTEGER REFERENCES provider_connections(id) ON DELETE CASCADE,
    selected_calendars TEXT NOT NULL DEFAULT '[]',
    import_as TEXT NOT NULL DEFAULT 'smart' CHECK (import_as IN ('tasks', 'schedule', 'smart')),
    target_quest_id INTEGER REFERENCES quests(id) ON DELETE SET NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    last_synced_at TIMESTAMP,
    last_error TEXT,
    sync_status TEXT NOT NULL DEFAULT 'idle',
    sync_started_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_calendar_sources_user
    ON calendar_sources(user_id, is_active);

-- Tracking rows: external event -> internal entity
CREATE TABLE IF NOT EXISTS imported_events (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    source_id INTEGER NOT NULL REFERENCES calendar_sources(id) ON DELETE CASCADE,
    external_uid TEXT NOT NULL,
    created_as TEXT NOT NULL CHECK (created_as IN ('task', 'schedule_block')),
    created_id INTEGER NOT NULL,
    event_hash TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(user_id, source_id, external_uid)
);

-- At most one tracking row per internal entity
CREATE UNIQUE INDEX IF NOT EXISTS idx_imported_events_entity
    ON imported_events(created_as, created_id);

-- Audit log
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
    source_id INTEGER,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    details TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_log_user ON sync_log(user_id, created_at);

-- OAuth state storage
CREATE TABLE IF NOT EXISTS oauth_states (
    state TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    next_url TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    expires_at TIMESTAMP NOT NULL
);

-- Job locking
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP,
    locked_by TEXT
);
"""


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA foreign_keys = ON")
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


def get_write_lock() -> asyncio.Lock:
    """Get or create the lock serializing write sections on the shared connection."""
    global _write_lock
    if _write_lock is None:
        _write_lock = asyncio.Lock()
    return _write_lock


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection, _write_lock

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")
        _write_lock = None


async def log_sync_event(
    user_id: Optional[int],
    source_id: Optional[int],
    action: str,
    status: str,
    details: Optional[str] = None,
) -> None:
    """Append an entry to the sync audit log."""
    db = await get_database()
    await db.execute(
        """INSERT INTO sync_log (user_id, source_id, action, status, details)
           VALUES (?, ?, ?, ?, ?)""",
        (user_id, source_id, action, status, details)
    )
    await db.commit()

"""Task, schedule-block and quest persistence used by calendar imports.

These are the host application's CRUD operations. Failures surface as
PersistenceError so the reconciler can report them per event.
"""

import json
import logging
from datetime import datetime
from typing import Optional

import aiosqlite

from calsync.errors import PersistenceError

logger = logging.getLogger(__name__)

TASK = "task"
SCHEDULE_BLOCK = "schedule_block"


async def get_or_create_default_quest(
    db: aiosqlite.Connection,
    user_id: int,
    title: str,
) -> int:
    """Return the user's oldest quest, creating one when none exists."""
    cursor = await db.execute(
        "SELECT id FROM quests WHERE user_id = ? ORDER BY created_at, id LIMIT 1",
        (user_id,)
    )
    row = await cursor.fetchone()
    if row:
        return row["id"]

    async with db.execute(
        "INSERT INTO quests (user_id, title) VALUES (?, ?) RETURNING id",
        (user_id, title)
    ) as cursor:
        row = await cursor.fetchone()
    await db.commit()
    logger.info(f"Created default quest {row['id']} for user {user_id}")
    return row["id"]


async def create_task(
    db: aiosqlite.Connection,
    user_id: int,
    quest_id: Optional[int],
    title: str,
    due_date: str,
) -> int:
    try:
        async with db.execute(
            """INSERT INTO tasks (user_id, quest_id, title, due_date, priority, completed, xp_value)
               VALUES (?, ?, ?, ?, 'medium', FALSE, 10)
               RETURNING id""",
            (user_id, quest_id, title, due_date)
        ) as cursor:
            row = await cursor.fetchone()
    except aiosqlite.Error as e:
        raise PersistenceError(f"Failed to create task: {title}") from e
    return row["id"]


async def update_task(db: aiosqlite.Connection, task_id: int, title: str, due_date: str) -> bool:
    """Update title and due date; returns False when the task is gone."""
    try:
        cursor = await db.execute(
            "UPDATE tasks SET title = ?, due_date = ?, updated_at = ? WHERE id = ?",
            (title, due_date, datetime.utcnow().isoformat(), task_id)
        )
    except aiosqlite.Error as e:
        raise PersistenceError(f"Failed to update task: {title}") from e
    return cursor.rowcount > 0


async def find_untracked_task(
    db: aiosqlite.Connection,
    quest_id: Optional[int],
    title: str,
    due_date: str,
) -> Optional[int]:
    """An existing, non-deleted task with this title and due date and no tracking row."""
    cursor = await db.execute(
        """SELECT t.id FROM tasks t
           WHERE t.quest_id IS ? AND t.title = ? AND t.due_date = ?
           AND t.deleted_at IS NULL
           AND NOT EXISTS (
               SELECT 1 FROM imported_events ie
               WHERE ie.created_as = 'task' AND ie.created_id = t.id
           )
           ORDER BY t.id LIMIT 1""",
        (quest_id, title, due_date)
    )
    row = await cursor.fetchone()
    return row["id"] if row else None


async def soft_delete_tasks(db: aiosqlite.Connection, task_ids: list[int]) -> int:
    if not task_ids:
        return 0
    placeholders = ",".join("?" * len(task_ids))
    cursor = await db.execute(
        f"UPDATE tasks SET deleted_at = ? WHERE id IN ({placeholders}) AND deleted_at IS NULL",
        [datetime.utcnow().isoformat(), *task_ids]
    )
    return cursor.rowcount


async def delete_task(db: aiosqlite.Connection, task_id: int) -> None:
    """Hard-delete a task together with the tracking row pointing at it."""
    try:
        await db.execute(
            "DELETE FROM imported_events WHERE created_as = 'task' AND created_id = ?",
            (task_id,)
        )
        await db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    except aiosqlite.Error as e:
        raise PersistenceError(f"Failed to delete task {task_id}") from e


async def create_schedule_block(
    db: aiosqlite.Connection,
    user_id: int,
    title: str,
    day_of_week: int,
    start_time: str,
    end_time: str,
    on_date: str,
) -> int:
    """Create a single-day block (validity window starts and ends on the date)."""
    try:
        async with db.execute(
            """INSERT INTO schedule_blocks
               (user_id, title, days_of_week, start_time, end_time, start_date, end_date)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               RETURNING id""",
            (user_id, title, json.dumps([day_of_week]), start_time, end_time, on_date, on_date)
        ) as cursor:
            row = await cursor.fetchone()
    except aiosqlite.Error as e:
        raise PersistenceError(f"Failed to create schedule block: {title}") from e
    return row["id"]


async def update_schedule_block(
    db: aiosqlite.Connection,
    block_id: int,
    title: str,
    day_of_week: int,
    start_time: str,
    end_time: str,
    on_date: str,
) -> bool:
    """Update a single-day block; returns False when the block is gone."""
    try:
        cursor = await db.execute(
            """UPDATE schedule_blocks SET
               title = ?, days_of_week = ?, start_time = ?, end_time = ?,
               start_date = ?, end_date = ?, updated_at = ?
               WHERE id = ?""",
            (
                title, json.dumps([day_of_week]), start_time, end_time,
                on_date, on_date, datetime.utcnow().isoformat(), block_id,
            )
        )
    except aiosqlite.Error as e:
        raise PersistenceError(f"Failed to update schedule block: {title}") from e
    return cursor.rowcount > 0


async def delete_schedule_block(db: aiosqlite.Connection, block_id: int) -> None:
    """Delete a block together with the tracking row pointing at it."""
    try:
        await db.execute(
            "DELETE FROM imported_events WHERE created_as = 'schedule_block' AND created_id = ?",
            (block_id,)
        )
        await db.execute("DELETE FROM schedule_blocks WHERE id = ?", (block_id,))
    except aiosqlite.Error as e:
        raise PersistenceError(f"Failed to delete schedule block {block_id}") from e


async def delete_entity(db: aiosqlite.Connection, kind: str, entity_id: int) -> None:
    if kind == TASK:
        await delete_task(db, entity_id)
    else:
        await delete_schedule_block(db, entity_id)

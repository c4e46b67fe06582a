"""Repair of import-shaped entities that lost (or never got) a tracking row."""

import logging
from collections import defaultdict
from typing import Optional

import aiosqlite

from calsync.entities import SCHEDULE_BLOCK, TASK, soft_delete_tasks
from calsync.sync.tracking import source_entity_ids, tracked_entity_ids

logger = logging.getLogger(__name__)


async def delete_orphaned_blocks(db: aiosqlite.Connection, user_id: int) -> int:
    """
    Delete untracked single-day schedule blocks.

    A block whose validity window starts and ends on the same day is what an
    import produces. Blocks carry no identity strong enough to adopt, so an
    untracked one is removed and recreated by the reconciler if still upstream.
    """
    cursor = await db.execute(
        """DELETE FROM schedule_blocks
           WHERE user_id = ? AND start_date IS NOT NULL AND start_date = end_date
           AND id NOT IN (
               SELECT created_id FROM imported_events WHERE created_as = ?
           )
           RETURNING id""",
        (user_id, SCHEDULE_BLOCK)
    )
    deleted = await cursor.fetchall()
    return len(deleted)


async def remove_duplicate_tasks(
    db: aiosqlite.Connection,
    user_id: int,
    source_id: int,
    quest_id: Optional[int],
) -> int:
    """
    Soft-delete untracked copies of tasks this source tracks.

    Tasks in the quest are grouped by (title, due_date). Only groups with more
    than one member and at least one member tracked by this source are
    touched, and only members tracked by no source are removed.
    """
    cursor = await db.execute(
        """SELECT id, title, due_date FROM tasks
           WHERE user_id = ? AND quest_id IS ? AND deleted_at IS NULL""",
        (user_id, quest_id)
    )
    groups: dict[tuple, list[int]] = defaultdict(list)
    for row in await cursor.fetchall():
        groups[(row["title"], row["due_date"])].append(row["id"])

    tracked_anywhere = await tracked_entity_ids(db, user_id, TASK)
    tracked_here = await source_entity_ids(db, source_id, TASK)

    duplicates = []
    for (title, due_date), task_ids in groups.items():
        if len(task_ids) < 2:
            continue
        if not any(task_id in tracked_here for task_id in task_ids):
            continue
        untracked = [task_id for task_id in task_ids if task_id not in tracked_anywhere]
        if untracked:
            logger.info(
                f"Removing {len(untracked)} duplicate task(s) '{title}' due {due_date}"
            )
            duplicates.extend(untracked)

    return await soft_delete_tasks(db, duplicates)


async def cleanup_orphans(
    db: aiosqlite.Connection,
    user_id: int,
    source_id: int,
    quest_id: Optional[int],
) -> dict:
    """
    Run once at the start of a pass, before reconciliation.

    Returns a summary; failures are logged and counted, never raised.
    """
    summary = {
        "orphaned_blocks_deleted": 0,
        "duplicate_tasks_removed": 0,
        "errors": 0,
    }

    try:
        summary["orphaned_blocks_deleted"] = await delete_orphaned_blocks(db, user_id)
        await db.commit()
    except aiosqlite.Error as e:
        logger.error(f"Orphaned block cleanup failed for user {user_id}: {e}")
        await db.rollback()
        summary["errors"] += 1

    try:
        summary["duplicate_tasks_removed"] = await remove_duplicate_tasks(
            db, user_id, source_id, quest_id
        )
        await db.commit()
    except aiosqlite.Error as e:
        logger.error(f"Duplicate task cleanup failed for source {source_id}: {e}")
        await db.rollback()
        summary["errors"] += 1

    if summary["orphaned_blocks_deleted"] or summary["duplicate_tasks_removed"]:
        logger.info(f"Orphan cleanup for source {source_id}: {summary}")
    return summary

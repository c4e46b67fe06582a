"""Per-event reconciliation of canonical events against internal entities."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

import aiosqlite

from calsync import entities
from calsync.entities import SCHEDULE_BLOCK, TASK
from calsync.sync.normalize import CanonicalEvent, EventShape, resolve_shape
from calsync.sync.tracking import TrackingStore
from calsync.utils.dates import ensure_end_after_start, iso_weekday

logger = logging.getLogger(__name__)


class EventState(str, Enum):
    NEW = "new"
    UNCHANGED = "unchanged"
    CHANGED = "changed"


@dataclass
class SyncResult:
    """Aggregate outcome of one or more sync passes."""
    tasks_created: int = 0
    tasks_updated: int = 0
    tasks_deleted: int = 0
    schedule_blocks_created: int = 0
    schedule_blocks_updated: int = 0
    schedule_blocks_deleted: int = 0
    events_processed: int = 0
    calendars_processed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def mutations(self) -> int:
        return (
            self.tasks_created + self.tasks_updated + self.tasks_deleted
            + self.schedule_blocks_created + self.schedule_blocks_updated
            + self.schedule_blocks_deleted
        )

    def merge(self, other: "SyncResult") -> None:
        self.tasks_created += other.tasks_created
        self.tasks_updated += other.tasks_updated
        self.tasks_deleted += other.tasks_deleted
        self.schedule_blocks_created += other.schedule_blocks_created
        self.schedule_blocks_updated += other.schedule_blocks_updated
        self.schedule_blocks_deleted += other.schedule_blocks_deleted
        self.events_processed += other.events_processed
        self.calendars_processed += other.calendars_processed
        self.errors.extend(other.errors)

    def as_response(self) -> dict:
        return {
            "tasksCreated": self.tasks_created,
            "tasksUpdated": self.tasks_updated,
            "tasksDeleted": self.tasks_deleted,
            "scheduleBlocksCreated": self.schedule_blocks_created,
            "scheduleBlocksUpdated": self.schedule_blocks_updated,
            "scheduleBlocksDeleted": self.schedule_blocks_deleted,
            "eventsProcessed": self.events_processed,
            "calendarsProcessed": self.calendars_processed,
            "errors": list(self.errors),
        }


def classify(event: CanonicalEvent, row: Optional[dict]) -> EventState:
    if row is None:
        return EventState.NEW
    if row["event_hash"] == event.hash:
        return EventState.UNCHANGED
    return EventState.CHANGED


def block_times(event: CanonicalEvent) -> tuple[str, str]:
    """Start/end for a block; all-day events forced into blocks get 09:00."""
    return ensure_end_after_start(event.start_time or "09:00", event.end_time)


class Reconciler:
    """Applies create / update / skip / delete decisions for one source."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        source: dict,
        quest_id: Optional[int],
        tracking: TrackingStore,
        result: SyncResult,
    ):
        self.db = db
        self.source = source
        self.user_id = source["user_id"]
        self.import_as = source["import_as"]
        self.quest_id = quest_id
        self.tracking = tracking
        self.result = result

    async def process(self, event: CanonicalEvent) -> Optional[EventState]:
        """
        Reconcile one event. Failures are recorded in the result and never
        raised; the return value is None in that case.
        """
        self.result.events_processed += 1
        try:
            state = await self._apply(event)
            await self.db.commit()
            return state
        except Exception as e:
            logger.error(f"Error processing event {event.external_uid}: {e}")
            await self.db.rollback()
            self.result.errors.append(f"Error processing: {event.title}")
            return None

    async def _apply(self, event: CanonicalEvent) -> EventState:
        row = self.tracking.lookup(event.external_uid)
        state = classify(event, row)

        if state is EventState.UNCHANGED:
            return state

        if state is EventState.CHANGED:
            if await self._update(event, row):
                await self.tracking.touch(row["id"], event.hash)
                return state
            # Tracked entity was deleted out from under us
            logger.info(f"Tracked {row['created_as']} {row['created_id']} is gone, re-importing")
            await self.tracking.forget(row)

        if resolve_shape(event, self.import_as) is EventShape.TASK:
            await self._create_or_adopt_task(event)
        else:
            await self._create_block(event)
        return EventState.NEW

    async def _update(self, event: CanonicalEvent, row: dict) -> bool:
        if row["created_as"] == TASK:
            updated = await entities.update_task(
                self.db, row["created_id"], event.title, event.date_iso
            )
            if updated:
                self.result.tasks_updated += 1
            return updated

        start_time, end_time = block_times(event)
        updated = await entities.update_schedule_block(
            self.db,
            row["created_id"],
            event.title,
            iso_weekday(event.date),
            start_time,
            end_time,
            event.date_iso,
        )
        if updated:
            self.result.schedule_blocks_updated += 1
        return updated

    async def _create_or_adopt_task(self, event: CanonicalEvent) -> None:
        existing_id = await entities.find_untracked_task(
            self.db, self.quest_id, event.title, event.date_iso
        )
        if existing_id is not None:
            # A previous partial pass created it without a tracking row
            await self.tracking.record(event.external_uid, TASK, existing_id, event.hash)
            self.result.tasks_updated += 1
            logger.info(f"Adopted untracked task {existing_id} for {event.external_uid}")
            return

        task_id = await entities.create_task(
            self.db, self.user_id, self.quest_id, event.title, event.date_iso
        )
        await self.tracking.record(event.external_uid, TASK, task_id, event.hash)
        self.result.tasks_created += 1

    async def _create_block(self, event: CanonicalEvent) -> None:
        start_time, end_time = block_times(event)
        block_id = await entities.create_schedule_block(
            self.db,
            self.user_id,
            event.title,
            iso_weekday(event.date),
            start_time,
            end_time,
            event.date_iso,
        )
        await self.tracking.record(event.external_uid, SCHEDULE_BLOCK, block_id, event.hash)
        self.result.schedule_blocks_created += 1

    async def delete_vanished(self, seen_uids: Iterable[str]) -> None:
        """Full-pull sources only: remove what disappeared upstream."""
        for row in self.tracking.unseen(seen_uids):
            try:
                await entities.delete_entity(self.db, row["created_as"], row["created_id"])
                await self.tracking.forget(row)
                await self.db.commit()
            except Exception as e:
                logger.error(f"Failed to delete removed event {row['external_uid']}: {e}")
                await self.db.rollback()
                self.result.errors.append(f"Failed to delete removed event: {row['external_uid']}")
                continue

            if row["created_as"] == TASK:
                self.result.tasks_deleted += 1
            else:
                self.result.schedule_blocks_deleted += 1

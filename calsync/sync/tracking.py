"""Tracking rows mapping external events to the entities they produced."""

import logging
from typing import Iterable, Optional

import aiosqlite

logger = logging.getLogger(__name__)


class TrackingStore:
    """
    In-memory view of one source's tracking rows for the duration of a pass.

    Rows are read once by load(); lookups are then dictionary hits, keeping a
    pass linear in events plus tracked rows.
    """

    def __init__(self, db: aiosqlite.Connection, user_id: int, source_id: int):
        self.db = db
        self.user_id = user_id
        self.source_id = source_id
        self._rows: dict[str, dict] = {}
        self._by_id: dict[int, dict] = {}

    async def load(self) -> "TrackingStore":
        cursor = await self.db.execute(
            """SELECT * FROM imported_events
               WHERE user_id = ? AND source_id = ?""",
            (self.user_id, self.source_id)
        )
        self._rows = {row["external_uid"]: dict(row) for row in await cursor.fetchall()}
        self._by_id = {row["id"]: row for row in self._rows.values()}
        logger.debug(f"Loaded {len(self._rows)} tracking rows for source {self.source_id}")
        return self

    def __len__(self) -> int:
        return len(self._rows)

    def lookup(self, uid: str) -> Optional[dict]:
        return self._rows.get(uid)

    async def record(self, uid: str, kind: str, entity_id: int, event_hash: str) -> dict:
        async with self.db.execute(
            """INSERT INTO imported_events
               (user_id, source_id, external_uid, created_as, created_id, event_hash)
               VALUES (?, ?, ?, ?, ?, ?)
               RETURNING *""",
            (self.user_id, self.source_id, uid, kind, entity_id, event_hash)
        ) as cursor:
            row = dict(await cursor.fetchone())
        self._rows[uid] = row
        self._by_id[row["id"]] = row
        return row

    async def touch(self, row_id: int, new_hash: str) -> None:
        await self.db.execute(
            "UPDATE imported_events SET event_hash = ? WHERE id = ?",
            (new_hash, row_id)
        )
        row = self._by_id.get(row_id)
        if row is not None:
            row["event_hash"] = new_hash

    async def forget(self, row: dict) -> None:
        await self.db.execute("DELETE FROM imported_events WHERE id = ?", (row["id"],))
        self._rows.pop(row["external_uid"], None)
        self._by_id.pop(row["id"], None)

    def unseen(self, seen_uids: Iterable[str]) -> list[dict]:
        """Rows whose external event was not present in this pass."""
        seen = set(seen_uids)
        return [row for uid, row in self._rows.items() if uid not in seen]


async def tracked_entity_ids(db: aiosqlite.Connection, user_id: int, kind: str) -> set[int]:
    """Ids of entities of a kind tracked by any of the user's sources."""
    cursor = await db.execute(
        "SELECT created_id FROM imported_events WHERE user_id = ? AND created_as = ?",
        (user_id, kind)
    )
    return {row["created_id"] for row in await cursor.fetchall()}


async def source_entity_ids(db: aiosqlite.Connection, source_id: int, kind: str) -> set[int]:
    """Ids of entities of a kind tracked by one source."""
    cursor = await db.execute(
        "SELECT created_id FROM imported_events WHERE source_id = ? AND created_as = ?",
        (source_id, kind)
    )
    return {row["created_id"] for row in await cursor.fetchall()}

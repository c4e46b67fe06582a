"""Tests for reconciliation helpers."""

from datetime import date

from calsync.sync.normalize import CanonicalEvent
from calsync.sync.reconciler import EventState, SyncResult, block_times, classify


def _event(start_time=None, end_time=None, hash_value="h1") -> CanonicalEvent:
    return CanonicalEvent(
        external_uid="ics:1:x",
        title="Lab",
        is_all_day=start_time is None,
        date=date(2025, 5, 6),
        start_time=start_time,
        end_time=end_time,
        hash=hash_value,
    )


def test_classify():
    event = _event(hash_value="h1")
    assert classify(event, None) is EventState.NEW
    assert classify(event, {"event_hash": "h1"}) is EventState.UNCHANGED
    assert classify(event, {"event_hash": "old"}) is EventState.CHANGED


def test_block_times():
    assert block_times(_event("09:00", "10:30")) == ("09:00", "10:30")
    assert block_times(_event("14:00", "14:00")) == ("14:00", "15:00")
    assert block_times(_event()) == ("09:00", "10:00")


def test_sync_result_merge_and_response():
    first = SyncResult(tasks_created=2, schedule_blocks_deleted=1, events_processed=3, errors=["a"])
    second = SyncResult(tasks_updated=1, calendars_processed=2, errors=["b"])

    first.merge(second)

    assert first.mutations == 4
    assert first.as_response() == {
        "tasksCreated": 2,
        "tasksUpdated": 1,
        "tasksDeleted": 0,
        "scheduleBlocksCreated": 0,
        "scheduleBlocksUpdated": 0,
        "scheduleBlocksDeleted": 1,
        "eventsProcessed": 3,
        "calendarsProcessed": 2,
        "errors": ["a", "b"],
    }

"""Tests for event normalization."""

from datetime import date, datetime, timezone

from calsync.sync.ics import ParsedEvent
from calsync.sync.normalize import (
    EventShape,
    event_hash,
    normalize_google_event,
    normalize_ics_event,
    resolve_shape,
)


def test_google_all_day_event():
    event = normalize_google_event(
        {"id": "abc", "summary": " Essay due ", "start": {"date": "2025-05-06"}, "end": {"date": "2025-05-07"}},
        "primary",
        "UTC",
    )

    assert event.external_uid == "gcal:primary:abc"
    assert event.title == "Essay due"
    assert event.is_all_day
    assert event.date == date(2025, 5, 6)
    assert event.start_time is None
    assert event.hash == event_hash("Essay due", date(2025, 5, 6), None)


def test_google_timed_event_uses_user_timezone():
    event = normalize_google_event(
        {
            "id": "lec",
            "summary": "Lecture",
            "start": {"dateTime": "2025-05-06T23:30:00Z"},
            "end": {"dateTime": "2025-05-07T00:30:00Z"},
        },
        "work@example.com",
        "Europe/Berlin",
    )

    # 23:30 UTC is 01:30 the next day in Berlin (CEST)
    assert event.date == date(2025, 5, 7)
    assert event.start_time == "01:30"
    assert event.end_time == "02:30"
    assert not event.is_all_day


def test_google_timed_event_without_end_defaults_to_one_hour():
    event = normalize_google_event(
        {"id": "x", "summary": "Meeting", "start": {"dateTime": "2025-05-06T09:15:00+00:00"}},
        "primary",
        "UTC",
    )
    assert (event.start_time, event.end_time) == ("09:15", "10:15")


def test_google_cancelled_and_untitled_events_are_dropped():
    assert normalize_google_event(
        {"id": "x", "status": "cancelled", "summary": "Gone", "start": {"date": "2025-05-06"}},
        "primary",
        "UTC",
    ) is None
    assert normalize_google_event(
        {"id": "y", "summary": "   ", "start": {"date": "2025-05-06"}},
        "primary",
        "UTC",
    ) is None


def test_ics_event_uid_is_scoped_to_source():
    parsed = ParsedEvent(uid="lab-1", summary="Lab", start=date(2025, 5, 6))
    event = normalize_ics_event(parsed, 12, "UTC")
    assert event.external_uid == "ics:12:lab-1"

    moved = ParsedEvent(uid="lab-1", summary="Lab", start=date(2025, 5, 6), recurrence_id="20250513")
    assert normalize_ics_event(moved, 12, "UTC").external_uid == "ics:12:lab-1_20250513"


def test_ics_floating_time_is_taken_as_local():
    parsed = ParsedEvent(
        uid="u",
        summary="Practice",
        start=datetime(2025, 5, 6, 18, 0),
        end=datetime(2025, 5, 6, 19, 0),
    )
    event = normalize_ics_event(parsed, 1, "America/Chicago")
    assert (event.start_time, event.end_time) == ("18:00", "19:00")


def test_hash_ignores_end_time_changes():
    first = normalize_ics_event(
        ParsedEvent(
            uid="u", summary="Lab",
            start=datetime(2025, 5, 6, 9, 0, tzinfo=timezone.utc),
            end=datetime(2025, 5, 6, 10, 0, tzinfo=timezone.utc),
        ),
        1,
        "UTC",
    )
    second = normalize_ics_event(
        ParsedEvent(
            uid="u", summary="Lab",
            start=datetime(2025, 5, 6, 9, 0, tzinfo=timezone.utc),
            end=datetime(2025, 5, 6, 11, 0, tzinfo=timezone.utc),
            description="now with notes",
        ),
        1,
        "UTC",
    )
    assert first.hash == second.hash
    assert first.hash != event_hash("Lab", date(2025, 5, 6), "09:30")


def test_resolve_shape():
    all_day = normalize_ics_event(ParsedEvent(uid="a", summary="A", start=date(2025, 5, 6)), 1, "UTC")
    timed = normalize_ics_event(
        ParsedEvent(uid="t", summary="T", start=datetime(2025, 5, 6, 9, 0, tzinfo=timezone.utc)),
        1,
        "UTC",
    )

    assert resolve_shape(all_day, "smart") is EventShape.TASK
    assert resolve_shape(timed, "smart") is EventShape.SCHEDULE
    assert resolve_shape(timed, "tasks") is EventShape.TASK
    assert resolve_shape(all_day, "schedule") is EventShape.SCHEDULE

from datetime import date, datetime, timezone

import pytest

from loma.errors import SchedulingConflictError, ValidationError
from loma.scheduling import (
    CONFLICT_MESSAGE,
    build_session_batch,
    check_time_slot_conflicts,
    find_conflicts,
    occurrence_dates,
    parse_slot,
    session_interval,
)

BASE = "http://loma.test"
NOW = datetime(2025, 2, 28, 9, 0, tzinfo=timezone.utc)


def at(day, hour, minute=0):
    return datetime(2025, 3, day, hour, minute, tzinfo=timezone.utc)


EXISTING = [{"id": 1, "date": "2025-03-01T14:00:00.000Z", "duration": 50, "status": "scheduled"}]


def test_overlapping_slot_conflicts():
    assert check_time_slot_conflicts(at(1, 14, 30), 50, EXISTING, [])


def test_back_to_back_slots_do_not_conflict():
    assert not check_time_slot_conflicts(at(1, 14, 50), 50, EXISTING, [])
    assert not check_time_slot_conflicts(at(1, 13, 10), 50, EXISTING, [])


def test_missing_duration_defaults_to_an_hour():
    undated_length = [{"id": 2, "date": "2025-03-01T09:00:00Z"}]

    start, end = session_interval(undated_length[0])

    assert (end - start).total_seconds() == 3600
    assert check_time_slot_conflicts(at(1, 9, 59), 30, undated_length, [])
    assert not check_time_slot_conflicts(at(1, 10), 30, undated_length, [])


def test_session_never_conflicts_with_itself():
    assert not check_time_slot_conflicts(at(1, 14, 10), 50, EXISTING, [], exclude_session_id="1")


def test_meetings_block_slots_and_bad_dates_are_ignored():
    meetings = [{"id": "m1", "date": "2025-03-01T16:00:00Z", "duration": 30}, {"id": "m2", "date": "soon"}]

    conflicts = find_conflicts(at(1, 16, 15), 60, [], meetings)

    assert [item["id"] for item in conflicts] == ["m1"]


def test_owner_filter_skips_other_clinicians():
    rows = [dict(EXISTING[0], therapistId=9)]

    assert not check_time_slot_conflicts(at(1, 14), 50, rows, [], owner_id=7)
    assert check_time_slot_conflicts(at(1, 14), 50, rows, [], owner_id=9)


@pytest.mark.parametrize(
    "hour,minute,period,expected",
    [
        ("2", "30", "PM", at(1, 14, 30)),
        ("12", "00", "AM", at(1, 0)),
        ("12", "15", "PM", at(1, 12, 15)),
        ("9", "05", "am", at(1, 9, 5)),
    ],
)
def test_parse_slot_converts_twelve_hour_clock(hour, minute, period, expected):
    assert parse_slot("2025-03-01", hour, minute, period) == expected


def test_parse_slot_rejects_bad_input():
    with pytest.raises(ValidationError, match="Invalid date format"):
        parse_slot("not a date", "2", "00", "PM")
    with pytest.raises(ValidationError, match="Please fill in all date and time fields"):
        parse_slot(date(2025, 3, 1), "", "00", "PM")
    with pytest.raises(ValidationError, match="Invalid minutes"):
        parse_slot(date(2025, 3, 1), "2", "75", "PM")


def test_batch_validation_messages():
    with pytest.raises(ValidationError, match="Cannot schedule sessions in the past"):
        build_session_batch(42, datetime(2025, 2, 27, 15, tzinfo=timezone.utc), 50, now=NOW)
    with pytest.raises(ValidationError, match="Please select a client"):
        build_session_batch(None, at(1, 14), 50, now=NOW)
    with pytest.raises(ValidationError, match="Please select session duration"):
        build_session_batch(42, at(1, 14), None, now=NOW)
    with pytest.raises(ValidationError, match="between 1 and 52"):
        build_session_batch(42, at(1, 14), 50, recurrence="weekly", occurrences=53, now=NOW)


def test_earlier_today_is_not_in_the_past():
    batch = build_session_batch(42, datetime(2025, 2, 28, 8, tzinfo=timezone.utc), 50, now=NOW)

    assert len(batch) == 1


def test_weekly_batch_payloads():
    batch = build_session_batch(42, at(1, 14), 50, "individual", "weekly", 3, now=NOW)

    assert [request.payload()["date"] for request in batch] == [
        "2025-03-01T14:00:00.000Z",
        "2025-03-08T14:00:00.000Z",
        "2025-03-15T14:00:00.000Z",
    ]
    assert batch[0].payload() == {
        "patientId": 42,
        "date": "2025-03-01T14:00:00.000Z",
        "duration": 50,
        "status": "scheduled",
        "type": "individual",
    }


def test_monthly_recurrence_clamps_to_month_end():
    start = datetime(2025, 1, 31, 10, tzinfo=timezone.utc)

    dates = occurrence_dates(start, "monthly", 3)

    assert [d.date() for d in dates] == [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31)]


def test_scheduler_posts_each_occurrence(desk, requests_mock):
    requests_mock.get(f"{BASE}/api/clinical-sessions", json=[])
    requests_mock.get(f"{BASE}/api/meetings", json=[])
    posted = requests_mock.post(f"{BASE}/api/clinical-sessions", json={"success": True})

    created = desk.schedule_session(42, at(1, 14), 50, recurrence="biweekly", occurrences=2)

    assert len(created) == 2
    assert [req.json()["date"] for req in posted.request_history] == [
        "2025-03-01T14:00:00.000Z",
        "2025-03-15T14:00:00.000Z",
    ]
    assert desk.notifier.last.description == "Sessions scheduled successfully"


def test_scheduler_conflict_sends_nothing(desk, requests_mock):
    requests_mock.get(f"{BASE}/api/clinical-sessions", json=EXISTING)
    requests_mock.get(f"{BASE}/api/meetings", json=[])
    posted = requests_mock.post(f"{BASE}/api/clinical-sessions", json={"success": True})

    with pytest.raises(SchedulingConflictError):
        desk.schedule_session(42, at(1, 14, 20), 50)

    assert not posted.called
    assert desk.notifier.last.title == "Scheduling Conflict"
    assert desk.notifier.last.description == CONFLICT_MESSAGE


def test_scheduler_rejects_past_dates_without_requests(desk, requests_mock):
    with pytest.raises(ValidationError):
        desk.schedule_session(42, datetime(2025, 2, 1, 14, tzinfo=timezone.utc), 50)

    assert requests_mock.call_count == 0
    assert desk.notifier.last.description == "Cannot schedule sessions in the past"


def test_calendar_reads_are_cached_per_filter(desk, requests_mock):
    blocks = requests_mock.get(f"{BASE}/api/calendar/blocks", json={"success": True, "data": [{"id": 1}]})
    requests_mock.get(f"{BASE}/api/clinical-sessions", json=EXISTING)

    assert desk.calendar_blocks.list() == [{"id": 1}]
    assert desk.calendar_blocks.list() == [{"id": 1}]
    assert [s.id for s in desk.sessions.models(client=42)] == [1]
    desk.sessions.list()

    assert blocks.call_count == 1
    assert [req.qs for req in requests_mock.request_history[1:]] == [{"client": ["42"]}, {}]

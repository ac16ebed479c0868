from datetime import datetime, timezone

import pytest

from loma.cache import query_key
from loma.errors import ApiError, InvalidTransitionError, SchedulingConflictError, ValidationError
from loma.resources import MEETINGS_PATH
from loma.sessions import next_status

BASE = "http://loma.test"

SESSION = {
    "id": 5,
    "patientId": 42,
    "date": "2025-03-01T14:00:00.000Z",
    "duration": 50,
    "status": "scheduled",
    "client": {"id": 42, "name": "Sam Ortiz", "billingType": "private_pay"},
}


def with_client(**fields):
    return dict(SESSION, client=dict(SESSION["client"], **fields))


def test_next_status_table():
    assert next_status("scheduled", "complete") == "completed"
    assert next_status("scheduled", "no-show") == "no_show"
    assert next_status("completed", "notes") == "completed"
    with pytest.raises(InvalidTransitionError):
        next_status("no_show", "complete")
    with pytest.raises(ValidationError):
        next_status("scheduled", "archive")


def test_complete_reports_task_creation(desk, requests_mock):
    put = requests_mock.put(
        f"{BASE}/api/clinical-sessions/5/status", json={"success": True, "taskCreated": True}
    )

    desk.session_action(SESSION, {"action": "complete"})

    assert put.request_history[0].json() == {"status": "completed"}
    assert desk.notifier.last.description == (
        "Session status updated successfully and session note task created"
    )


def test_complete_patches_cached_rows(desk, requests_mock):
    desk.cache.set_data(desk.sessions.key(), [dict(SESSION, client=None)])
    requests_mock.put(f"{BASE}/api/clinical-sessions/5/status", json={"success": True})

    desk.session_actions.complete(SESSION)

    assert desk.cache.get_data(desk.sessions.key())[0]["status"] == "completed"
    assert desk.cache.is_stale(desk.sessions.key())
    assert desk.notifier.last.description == "Session status updated successfully"


def test_completing_a_finished_session_is_rejected(desk, requests_mock):
    with pytest.raises(InvalidTransitionError):
        desk.session_action(dict(SESSION, status="completed"), {"action": "complete"})

    assert requests_mock.call_count == 0
    assert desk.notifier.last.is_error


def test_no_show_without_invoice(desk, requests_mock):
    put = requests_mock.put(f"{BASE}/api/clinical-sessions/5/status", json={"success": True})
    invoice = requests_mock.post(f"{BASE}/api/stripe/create-invoice", json={"success": True})

    desk.session_action(with_client(noShowFee="75"), {"action": "no-show", "invoiceFee": False})

    assert put.request_history[0].json() == {"status": "no_show"}
    assert not invoice.called
    assert desk.notifier.last.description == "Session status updated successfully"


def test_no_show_invoices_the_clients_fee(desk, requests_mock):
    requests_mock.put(f"{BASE}/api/clinical-sessions/5/status", json={"success": True})
    invoice = requests_mock.post(f"{BASE}/api/stripe/create-invoice", json={"success": True})

    desk.session_action(with_client(noShowFee="75"), {"action": "no-show", "invoiceFee": True})

    assert invoice.request_history[0].json() == {
        "patientId": 42,
        "sessionId": 5,
        "amount": 75.0,
        "description": "No-show fee for session on 2025-03-01",
        "serviceDate": "2025-03-01T14:00:00.000Z",
    }
    assert desk.notifier.last.description == "Session marked as no-show and invoice generated"


def test_no_show_fee_required_for_invoice(desk, requests_mock):
    with pytest.raises(ValidationError, match="No no-show fee"):
        desk.session_actions.no_show(SESSION, invoice_fee=True)

    assert requests_mock.call_count == 0
    assert desk.notifier.last.description == "No no-show fee is set for this client"


def test_no_show_invoice_failure_uses_invoice_title(desk, requests_mock):
    requests_mock.put(f"{BASE}/api/clinical-sessions/5/status", json={"success": True})
    requests_mock.post(
        f"{BASE}/api/stripe/create-invoice", status_code=400, json={"error": "Stripe customer missing"}
    )

    with pytest.raises(ApiError):
        desk.session_actions.no_show(with_client(noShowFee="40"), invoice_fee=True)

    assert desk.notifier.last.title == "Error creating invoice"
    assert desk.notifier.last.description == "Stripe customer missing"


def test_notes_are_sanitized(desk, requests_mock):
    put = requests_mock.put(f"{BASE}/api/clinical-sessions/5", json={"success": True})

    desk.session_action(SESSION, {"action": "notes", "notes": "  <b>Slept</b> better  "})

    assert put.request_history[0].json() == {"action": "notes", "notes": "Slept better"}
    assert desk.notifier.last.description == "Session notes saved successfully"


def test_invoice_falls_back_to_default_charge(desk, requests_mock):
    put = requests_mock.put(f"{BASE}/api/clinical-sessions/5", json={"success": True})

    desk.session_actions.invoice(SESSION)

    assert put.request_history[0].json() == {
        "action": "invoice",
        "shouldInvoice": True,
        "invoice": {"amount": "150.00", "description": "Therapy Session on 2025-03-01"},
    }


def test_invoice_uses_session_cost(desk, requests_mock):
    put = requests_mock.put(f"{BASE}/api/clinical-sessions/5", json={"success": True})

    desk.session_actions.invoice(with_client(sessionCost=180))

    assert put.request_history[0].json()["invoice"]["amount"] == "180.00"
    assert desk.notifier.last.description == "Invoice generated successfully"


def test_unknown_action_is_rejected(desk):
    with pytest.raises(ValidationError):
        desk.session_action(SESSION, {"action": "archive"})


def test_schedule_then_reschedule(desk, requests_mock):
    booked = {"id": 101, "patientId": 42, "date": "2025-03-01T14:00:00.000Z", "duration": 50, "status": "scheduled"}
    moved = dict(booked, date="2025-03-02T10:00:00.000Z")
    requests_mock.get(
        f"{BASE}/api/clinical-sessions",
        [{"json": []}, {"json": [booked]}, {"json": [moved]}],
    )
    requests_mock.get(f"{BASE}/api/meetings", json=[])
    post = requests_mock.post(f"{BASE}/api/clinical-sessions", json={"id": 101})
    put = requests_mock.put(f"{BASE}/api/clinical-sessions/101", json={"success": True})

    desk.schedule_session(42, datetime(2025, 3, 1, 14, tzinfo=timezone.utc), 50)
    assert post.request_history[0].json()["date"] == "2025-03-01T14:00:00.000Z"
    assert desk.sessions.list() == [booked]

    desk.reschedule_session(101, datetime(2025, 3, 2, 10, tzinfo=timezone.utc))

    assert put.request_history[0].json() == {"date": "2025-03-02T10:00:00.000Z"}
    assert desk.cache.get_data(desk.sessions.key())[0]["date"] == "2025-03-02T10:00:00.000Z"
    assert desk.notifier.last.description == "Session rescheduled successfully"


def test_reschedule_conflict_sends_nothing(desk, requests_mock):
    desk.cache.set_data(desk.sessions.key(), [dict(SESSION, id=101)])
    desk.cache.set_data(
        query_key(MEETINGS_PATH), [{"id": "m1", "date": "2025-03-02T10:30:00.000Z", "duration": 60}]
    )

    with pytest.raises(SchedulingConflictError):
        desk.reschedule_session(101, datetime(2025, 3, 2, 10, tzinfo=timezone.utc))

    assert requests_mock.call_count == 0
    assert desk.notifier.last.title == "Scheduling Conflict"
    assert desk.cache.get_data(desk.sessions.key())[0]["date"] == "2025-03-01T14:00:00.000Z"


def test_reschedule_failure_restores_calendar(desk, requests_mock):
    rows = [dict(SESSION, id=101, client=None)]
    desk.cache.set_data(desk.sessions.key(), rows)
    desk.cache.set_data(query_key(MEETINGS_PATH), [])
    before = desk.cache.snapshot(desk.sessions.key())
    requests_mock.put(
        f"{BASE}/api/clinical-sessions/101", status_code=500, json={"message": "Server error"}
    )

    with pytest.raises(ApiError):
        desk.reschedule_session(101, datetime(2025, 3, 2, 10, tzinfo=timezone.utc))

    assert desk.cache.get_data(desk.sessions.key()) is rows
    assert desk.cache.snapshot(desk.sessions.key()) == before
    assert desk.notifier.last.title == "Error"
    assert desk.notifier.last.description == "Server error"


def test_rescheduling_a_completed_session_is_rejected(desk, requests_mock):
    desk.cache.set_data(desk.sessions.key(), [dict(SESSION, id=101, status="completed")])
    desk.cache.set_data(query_key(MEETINGS_PATH), [])

    with pytest.raises(InvalidTransitionError):
        desk.reschedule_session(101, datetime(2025, 3, 2, 10, tzinfo=timezone.utc))

    assert requests_mock.call_count == 0


@pytest.mark.parametrize("fee", ["0", 0, "-10"])
def test_zero_no_show_fee_is_not_invoiced(desk, requests_mock, fee):
    with pytest.raises(ValidationError, match="No no-show fee"):
        desk.session_actions.no_show(with_client(noShowFee=fee), invoice_fee=True)

    assert requests_mock.call_count == 0
    assert desk.notifier.last.description == "No no-show fee is set for this client"


def test_reschedule_sends_new_duration(desk, requests_mock):
    row = dict(SESSION, id=101)
    desk.cache.set_data(desk.sessions.key(), [row])
    desk.cache.set_data(query_key(MEETINGS_PATH), [])
    moved = dict(row, date="2025-03-02T10:00:00.000Z", duration=80)
    requests_mock.get(f"{BASE}/api/clinical-sessions", json=[moved])
    put = requests_mock.put(f"{BASE}/api/clinical-sessions/101", json={"success": True})

    desk.reschedule_session(101, datetime(2025, 3, 2, 10, tzinfo=timezone.utc), duration=80)

    assert put.request_history[0].json() == {"date": "2025-03-02T10:00:00.000Z", "duration": 80}
    assert desk.cache.get_data(desk.sessions.key())[0]["duration"] == 80


def test_longer_reschedule_checks_conflicts_with_new_duration(desk, requests_mock):
    desk.cache.set_data(desk.sessions.key(), [dict(SESSION, id=101)])
    desk.cache.set_data(
        query_key(MEETINGS_PATH), [{"id": "m1", "date": "2025-03-02T11:00:00.000Z", "duration": 30}]
    )

    with pytest.raises(SchedulingConflictError):
        desk.reschedule_session(101, datetime(2025, 3, 2, 10, tzinfo=timezone.utc), duration=90)

    assert requests_mock.call_count == 0


def test_reschedule_rejects_non_positive_duration(desk, requests_mock):
    desk.cache.set_data(desk.sessions.key(), [dict(SESSION, id=101)])
    desk.cache.set_data(query_key(MEETINGS_PATH), [])

    with pytest.raises(ValidationError):
        desk.reschedule_session(101, datetime(2025, 3, 2, 10, tzinfo=timezone.utc), duration=0)

    assert requests_mock.call_count == 0
    assert desk.notifier.last.is_error

import pytest

from loma.errors import InvalidTransitionError, ValidationError
from loma.tasks import filter_tasks

BASE = "http://loma.test"

TASKS = [
    {"id": 1, "title": "Write note", "type": "session_note", "status": "pending", "patientId": 42,
     "createdAt": "2025-02-01T10:00:00Z"},
    {"id": 2, "title": "Send intake", "type": "intake_docs", "status": "pending", "patientId": 43,
     "createdAt": "2025-02-05T10:00:00Z"},
    {"id": 3, "title": "Invoice", "type": "invoice", "status": "completed", "patientId": 42,
     "createdAt": "2025-02-03T10:00:00Z"},
    {"id": 4, "title": "Renew license", "type": "custom", "status": "in_progress"},
]


def test_default_filter_shows_pending_newest_first():
    assert [task["id"] for task in filter_tasks(TASKS)] == [2, 1]


def test_filters_combine():
    assert [task["id"] for task in filter_tasks(TASKS, status="all", client=42)] == [3, 1]
    assert [task["id"] for task in filter_tasks(TASKS, status="all", type="custom")] == [4]
    assert filter_tasks(TASKS, status="completed", client="43") == []


def test_list_reads_wrapped_tasks(desk, requests_mock):
    requests_mock.get(f"{BASE}/api/tasks", json={"success": True, "data": TASKS})

    assert [task["id"] for task in desk.tasks.list(status="in_progress")] == [4]


def test_categories_failure_is_empty(desk, requests_mock):
    requests_mock.get(f"{BASE}/api/task-categories", status_code=500, json={})

    assert desk.tasks.categories() == []


def test_create_sanitizes_title(desk, requests_mock):
    create = requests_mock.post(f"{BASE}/api/tasks", json={"id": 9})

    desk.tasks.create({"title": "<i>Call</i> insurer", "patientId": 42, "dueDate": "2025-03-04T17:00:00Z"})

    assert create.request_history[0].json() == {
        "title": "Call insurer",
        "patientId": 42,
        "type": "custom",
        "status": "pending",
        "dueDate": "2025-03-04T17:00:00.000Z",
        "isAutomated": False,
        "categoryId": None,
    }
    assert desk.notifier.last.description == "Task created successfully"


def test_create_requires_title(desk, requests_mock):
    with pytest.raises(ValidationError):
        desk.tasks.create({"title": ""})

    assert requests_mock.call_count == 0


def test_complete_stamps_completion_time(desk, requests_mock):
    update = requests_mock.put(f"{BASE}/api/tasks/1", json={"success": True})

    desk.tasks.complete(TASKS[0])

    assert update.request_history[0].json() == {
        "status": "completed",
        "completedAt": "2025-02-28T09:00:00.000Z",
    }
    assert desk.notifier.last.description == "Task marked as completed"


def test_start_task(desk, requests_mock):
    update = requests_mock.put(f"{BASE}/api/tasks/2", json={"success": True})

    desk.tasks.set_status(TASKS[1], "in_progress")

    assert update.request_history[0].json() == {"status": "in_progress"}
    assert desk.notifier.last.description == "Task updated successfully"


def test_completed_task_cannot_reopen(desk, requests_mock):
    with pytest.raises(InvalidTransitionError):
        desk.tasks.set_status(TASKS[2], "pending")

    assert requests_mock.call_count == 0
    assert desk.notifier.last.is_error

"""Clinician to-do items."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping

import structlog

from loma.errors import InvalidTransitionError
from loma.models import TaskCreate, validate_request
from loma.notifications import Notifier
from loma.resources import TasksResource, run_mutation
from loma.sanitizer import sanitize_text
from loma.time_utils import parse_datetime, to_iso, utc_now

logger = structlog.get_logger(__name__)

_TASK_TRANSITIONS = {
    "pending": ("in_progress", "completed"),
    "in_progress": ("completed",),
    "completed": (),
}

_OLDEST = datetime(1970, 1, 1, tzinfo=timezone.utc)


def filter_tasks(
    tasks: Iterable[Mapping[str, Any]],
    status: str = "pending",
    type: str = "all",
    client: Any = "all",
) -> List[Mapping[str, Any]]:
    """Apply the task list's filters, newest first."""

    matched = [
        task
        for task in tasks
        if (status == "all" or task.get("status") == status)
        and (type == "all" or task.get("type") == type)
        and (client == "all" or (task.get("patientId") is not None and str(task.get("patientId")) == str(client)))
    ]
    return sorted(matched, key=lambda task: parse_datetime(task.get("createdAt")) or _OLDEST, reverse=True)


class TaskDesk:
    def __init__(
        self,
        tasks: TasksResource,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tasks = tasks
        self.notifier = notifier
        self._clock = clock

    def list(self, status: str = "pending", type: str = "all", client: Any = "all") -> List[Mapping[str, Any]]:
        return filter_tasks(self.tasks.list(), status=status, type=type, client=client)

    def categories(self) -> List[Dict[str, Any]]:
        return self.tasks.categories()

    def create(self, data: Any) -> Any:
        request = validate_request(TaskCreate, data)
        request = request.model_copy(update={"title": sanitize_text(request.title), "isAutomated": False})
        result = run_mutation("create_task", self.notifier, lambda: self.tasks.create(request.payload()))
        self.notifier.success("Success", "Task created successfully")
        return result

    def set_status(self, task: Mapping[str, Any], status: str) -> Any:
        """Move *task* forward; completed tasks stay completed."""

        current = task.get("status") or "pending"

        def _send() -> Any:
            if status not in _TASK_TRANSITIONS.get(current, ()):
                raise InvalidTransitionError(
                    f"Cannot move a task from {current} to {status}",
                    error_code="invalid_task_transition",
                    details={"from": current, "to": status},
                )
            body: Dict[str, Any] = {"status": status}
            if status == "completed":
                body["completedAt"] = to_iso(self._clock())
            return self.tasks.update(task.get("id"), body)

        result = run_mutation("update_task_status", self.notifier, _send)
        logger.info("task_status_changed", task_id=task.get("id"), status=status)
        if status == "completed":
            self.notifier.success("Success", "Task marked as completed")
        else:
            self.notifier.success("Success", "Task updated successfully")
        return result

    def complete(self, task: Mapping[str, Any]) -> Any:
        return self.set_status(task, "completed")


__all__ = ["TaskDesk", "filter_tasks"]

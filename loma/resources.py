"""Cached accessors for the practice API's resources.

Every list read goes through the shared :class:`~loma.cache.QueryCache`
under a key derived from the resource path and its filters, and always
yields a list.  Writes are thin wrappers that invalidate the affected keys
once the server confirms them; user-facing messaging for writes lives in
the workflow modules.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from loma.api_client import ApiClient
from loma.cache import QueryCache, QueryKey, query_key
from loma.envelope import fetch_collection, fetch_object
from loma.errors import (
    ApiError,
    InvalidTransitionError,
    LomaError,
    NotAuthenticatedError,
    ValidationError,
    classify_api_error,
)
from loma.metrics import MUTATIONS
from loma.models import Client, ClientCreate, Meeting, Session, Task, parse_many, validate_request
from loma.notifications import Notifier

logger = structlog.get_logger(__name__)

PATIENTS_PATH = "/api/patients"
SESSIONS_PATH = "/api/clinical-sessions"
MEETINGS_PATH = "/api/meetings"
CALENDAR_BLOCKS_PATH = "/api/calendar/blocks"
TASKS_PATH = "/api/tasks"
TASK_CATEGORIES_PATH = "/api/task-categories"
CLAIMS_PATH = "/api/cms1500-claims"
INVOICES_PATH = "/api/invoices"
BILLS_PATH = "/api/billing"
BILLING_PROFILE_PATH = "/api/therapist-billing"
CARDS_PATH = "/api/stripe-issuing/cards"


@dataclass(frozen=True)
class UserContext:
    """The signed-in clinician and the organisation they act for."""

    id: Optional[int] = None
    organization_id: Optional[int] = None
    email: Optional[str] = None


def run_mutation(
    name: str,
    notifier: Notifier,
    action: Callable[[], Any],
    *,
    error_title: str = "Error",
    on_error: Optional[Callable[[LomaError], Any]] = None,
) -> Any:
    """Run *action*, counting the outcome and surfacing failures.

    API errors are upgraded to their specific subclass before being shown
    and re-raised; authentication failures are re-raised without a
    notification.  *on_error* replaces the default notification.
    """

    def _report(error: LomaError) -> None:
        if on_error is not None and not isinstance(error, NotAuthenticatedError):
            on_error(error)
        else:
            notifier.notify_error(error, error_title)

    try:
        result = action()
    except ApiError as exc:
        error = classify_api_error(exc)
        outcome = "unauthenticated" if isinstance(error, NotAuthenticatedError) else "failed"
        MUTATIONS.labels(mutation=name, outcome=outcome).inc()
        logger.warning("mutation_failed", mutation=name, error=error.message, status=error.status_code)
        _report(error)
        if error is exc:
            raise
        raise error from exc
    except ValidationError as exc:
        MUTATIONS.labels(mutation=name, outcome="rejected").inc()
        logger.info("mutation_rejected", mutation=name, error=exc.message)
        _report(exc)
        raise
    MUTATIONS.labels(mutation=name, outcome="succeeded").inc()
    return result


class Resource:
    """Base for one REST collection read through the query cache."""

    path = ""

    def __init__(
        self,
        api: ApiClient,
        cache: QueryCache,
        *,
        stale_seconds: Optional[float] = None,
    ) -> None:
        self.api = api
        self.cache = cache
        self.stale_seconds = stale_seconds

    def key(self, **params: Any) -> QueryKey:
        return query_key(self.path, **params)

    def list(self, **params: Any) -> List[Dict[str, Any]]:
        return self._collection(self.path, **params)

    def _collection(self, path: str, **params: Any) -> List[Dict[str, Any]]:
        filters = {name: value for name, value in params.items() if value is not None}
        key = query_key(path, **filters)
        data = self.cache.fetch(
            key,
            lambda: fetch_collection(self.api, path, filters or None),
            stale_seconds=self.stale_seconds,
        )
        return data if isinstance(data, list) else []

    def invalidate(self) -> int:
        return self.cache.invalidate(self.path)

    def refetch(self) -> None:
        self.cache.refetch(self.path)

    def _item_path(self, item_id: Any, *suffix: str) -> str:
        return "/".join([self.path, str(item_id), *suffix])


# ----------------------------------------------------------------------
# Clients
# ----------------------------------------------------------------------
_CLIENT_TRANSITIONS: Dict[str, Iterable[str]] = {
    "inquiry": ("active",),
    "active": ("inactive", "terminated"),
    "inactive": ("active", "terminated"),
    "terminated": (),
}


class ClientsResource(Resource):
    path = PATIENTS_PATH

    def models(self) -> List[Client]:
        return parse_many(Client, self.list())

    def get(self, client_id: Any) -> Optional[Client]:
        for client in self.models():
            if str(client.id) == str(client_id):
                return client
        return None

    def insurance_clients(self) -> List[Client]:
        return [client for client in self.models() if client.is_insurance]

    def create(self, data: Any, user: Optional[UserContext]) -> Dict[str, Any]:
        """Create a client owned by *user* and their organisation."""

        if user is None or user.id is None:
            raise ValidationError("User not authenticated. Please log in again.")
        if user.organization_id is None:
            raise ValidationError(
                "No organization found. Please contact support to set up your practice."
            )
        request = validate_request(ClientCreate, data)
        request = request.model_copy(
            update={"organizationId": user.organization_id, "primaryTherapistId": user.id}
        )
        result = self.api.post(self.path, request.payload())
        self.invalidate()
        return result

    def update(self, client_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        result = self.api.put(self._item_path(client_id), changes)
        self.invalidate()
        return result

    def set_status(self, client: Client, status: str) -> Dict[str, Any]:
        current = client.status or "inquiry"
        if status not in _CLIENT_TRANSITIONS.get(current, ()):
            raise InvalidTransitionError(
                f"Cannot change client status from {current} to {status}",
                error_code="invalid_client_transition",
                details={"from": current, "to": status},
            )
        return self.update(client.id, {"status": status})


# ----------------------------------------------------------------------
# Calendar
# ----------------------------------------------------------------------
class SessionsResource(Resource):
    path = SESSIONS_PATH

    def key(self, client: Any = None) -> QueryKey:  # type: ignore[override]
        return query_key(self.path, client=client)

    def list(self, client: Any = None) -> List[Dict[str, Any]]:  # type: ignore[override]
        return self._collection(self.path, client=client)

    def models(self, client: Any = None) -> List[Session]:
        return parse_many(Session, self.list(client))

    def find(self, session_id: Any, client: Any = None) -> Optional[Dict[str, Any]]:
        for row in self.list(client):
            if isinstance(row, dict) and str(row.get("id")) == str(session_id):
                return row
        return None

    def create(self, body: Dict[str, Any]) -> Any:
        return self.api.post(self.path, body)

    def update_status(self, session_id: Any, status: str) -> Any:
        return self.api.put(self._item_path(session_id, "status"), {"status": status})

    def update(self, session_id: Any, body: Dict[str, Any]) -> Any:
        return self.api.put(self._item_path(session_id), body)


class MeetingsResource(Resource):
    path = MEETINGS_PATH

    def models(self) -> List[Meeting]:
        return parse_many(Meeting, self.list())


class CalendarBlocksResource(Resource):
    path = CALENDAR_BLOCKS_PATH


# ----------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------
class TasksResource(Resource):
    path = TASKS_PATH

    def models(self) -> List[Task]:
        return parse_many(Task, self.list())

    def categories(self) -> List[Dict[str, Any]]:
        return self._collection(TASK_CATEGORIES_PATH)

    def create(self, body: Dict[str, Any]) -> Any:
        result = self.api.post(self.path, body)
        self.invalidate()
        return result

    def update(self, task_id: Any, body: Dict[str, Any]) -> Any:
        result = self.api.put(self._item_path(task_id), body)
        self.invalidate()
        return result


# ----------------------------------------------------------------------
# Billing
# ----------------------------------------------------------------------
class BillingResource(Resource):
    path = BILLS_PATH

    def claims(self) -> List[Dict[str, Any]]:
        return self._collection(CLAIMS_PATH)

    def invoices(self) -> List[Dict[str, Any]]:
        return self._collection(INVOICES_PATH)

    def profile(self) -> Optional[Dict[str, Any]]:
        """Return the clinician's billing profile, ``None`` when unavailable."""

        return self.cache.fetch(
            query_key(BILLING_PROFILE_PATH),
            lambda: fetch_object(self.api, BILLING_PROFILE_PATH),
            stale_seconds=self.stale_seconds,
        )

    def create_claim(self, body: Dict[str, Any]) -> Any:
        result = self.api.post(CLAIMS_PATH, body)
        self.cache.invalidate(BILLS_PATH)
        self.cache.invalidate(CLAIMS_PATH)
        return result

    def create_invoice(self, body: Dict[str, Any]) -> Any:
        result = self.api.post("/api/stripe/create-invoice", body)
        self.cache.invalidate(BILLS_PATH)
        self.cache.invalidate(INVOICES_PATH)
        return result

    def validate_claim(self, claim_id: Any) -> Any:
        return self.api.get(f"/api/cms1500-validation/{claim_id}")

    def invalidate(self) -> int:
        return sum(self.cache.invalidate(path) for path in (BILLS_PATH, CLAIMS_PATH, INVOICES_PATH))


# ----------------------------------------------------------------------
# Cards
# ----------------------------------------------------------------------
class CardsResource(Resource):
    """Issued cards; the listing uses its own ``{success, cards}`` envelope."""

    path = CARDS_PATH

    def listing(self, fetcher: Callable[[], Any]) -> Any:
        return self.cache.fetch(self.key(), fetcher, stale_seconds=self.stale_seconds)

    def create(self, card_type: str, body: Dict[str, Any]) -> Any:
        result = self.api.post(f"/api/stripe-issuing/create-{card_type}-card", body)
        self.invalidate()
        return result

    def update_status(self, card_id: Any, status: str) -> Any:
        result = self.api.post(self._item_path(card_id, "update-status"), {"status": status})
        self.invalidate()
        return result


__all__ = [
    "BillingResource",
    "CalendarBlocksResource",
    "CardsResource",
    "ClientsResource",
    "MeetingsResource",
    "Resource",
    "SessionsResource",
    "TasksResource",
    "UserContext",
    "run_mutation",
]

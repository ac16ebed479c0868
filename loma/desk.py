"""One object that wires the client, cache and notifier together.

An interface layer creates a :class:`PracticeDesk` per signed-in clinician
and reaches every resource and workflow through it.  Nothing here is
global: two desks never share a cache.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from loma.api_client import ApiClient
from loma.billing import BillingDesk
from loma.cache import QueryCache
from loma.cards import CardDesk
from loma.config import Settings, get_settings
from loma.logging_config import configure_logging
from loma.models import Client
from loma.notifications import Notifier
from loma.resources import (
    BillingResource,
    CalendarBlocksResource,
    CardsResource,
    ClientsResource,
    MeetingsResource,
    SessionsResource,
    TasksResource,
    UserContext,
    run_mutation,
)
from loma.scheduling import SessionScheduler
from loma.sessions import SessionActions
from loma.tasks import TaskDesk
from loma.time_utils import utc_now

logger = structlog.get_logger(__name__)


class PracticeDesk:
    """Entry point for a clinician's practice workflows."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        api: Optional[ApiClient] = None,
        cache: Optional[QueryCache] = None,
        notifier: Optional[Notifier] = None,
        user: Optional[UserContext] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        configure_logging(self.settings.log_level)

        self.api = api or ApiClient(settings=self.settings)
        self.cache = cache or QueryCache(self.settings.list_stale_seconds)
        self.notifier = notifier or Notifier()
        self.user = user
        self.api.on_clear_cache(self.cache.clear)

        stale = self.settings.list_stale_seconds
        self.clients = ClientsResource(self.api, self.cache, stale_seconds=stale)
        self.sessions = SessionsResource(self.api, self.cache, stale_seconds=stale)
        self.meetings = MeetingsResource(self.api, self.cache, stale_seconds=stale)
        self.calendar_blocks = CalendarBlocksResource(self.api, self.cache, stale_seconds=stale)
        self.task_items = TasksResource(self.api, self.cache, stale_seconds=stale)
        self.bills = BillingResource(self.api, self.cache, stale_seconds=stale)
        self.card_items = CardsResource(self.api, self.cache, stale_seconds=stale)

        self.scheduler = SessionScheduler(self.sessions, self.meetings, self.notifier, clock=clock)
        self.session_actions = SessionActions(
            self.cache,
            self.sessions,
            self.meetings,
            self.task_items,
            self.bills,
            self.clients,
            self.notifier,
            default_charge=self.settings.default_charge,
        )
        self.billing = BillingDesk(
            self.api,
            self.bills,
            self.clients,
            self.sessions,
            self.notifier,
            default_charge=self.settings.default_charge,
        )
        self.cards = CardDesk(self.api, self.card_items, self.notifier, user=user)
        self.tasks = TaskDesk(self.task_items, self.notifier, clock=clock)
        logger.debug("practice_desk_ready", api_url=self.api.base_url)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------
    def create_client(self, data: Any) -> Any:
        result = run_mutation(
            "create_client", self.notifier, lambda: self.clients.create(data, self.user)
        )
        self.notifier.success("Success", "Patient created successfully")
        return result

    def update_client(self, client_id: Any, changes: Dict[str, Any]) -> Any:
        result = run_mutation(
            "update_client", self.notifier, lambda: self.clients.update(client_id, changes)
        )
        self.notifier.success("Success", "Client updated successfully")
        return result

    def set_client_status(self, client: Client, status: str) -> Any:
        result = run_mutation(
            "set_client_status", self.notifier, lambda: self.clients.set_status(client, status)
        )
        self.notifier.success("Success", "Client updated successfully")
        return result

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def schedule_session(self, patient_id: Optional[int], start: Optional[datetime], duration: Optional[int], **options: Any) -> Any:
        return self.scheduler.schedule(patient_id, start, duration, **options)

    def reschedule_session(self, session_id: Any, new_date: datetime, duration: Optional[int] = None) -> Any:
        return self.session_actions.reschedule(session_id, new_date, duration)

    def session_action(self, session: Any, action: Dict[str, Any]) -> Any:
        return self.session_actions.dispatch(session, action)


__all__ = ["PracticeDesk"]

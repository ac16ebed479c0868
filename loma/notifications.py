"""User-facing notifications raised by workflows.

Workflows never render anything; they hand :class:`Notification` records to
a :class:`Notifier` and the interface layer decides how to show them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, List, Optional

import structlog

from loma.errors import BankingSetupError, LomaError, NotAuthenticatedError

logger = structlog.get_logger(__name__)

BANKING_SETUP_TITLE = "Business Banking Setup Required"
BANKING_SETUP_DESCRIPTION = "Please complete your business banking setup in Financials."
BANKING_SETUP_PATH = "/financials"


@dataclass(frozen=True)
class NotificationAction:
    """A follow-up the user can take from a notification."""

    label: str
    target: str


@dataclass(frozen=True)
class Notification:
    title: str
    description: str = ""
    variant: str = "default"
    action: Optional[NotificationAction] = None

    @property
    def is_error(self) -> bool:
        return self.variant == "destructive"


@dataclass
class Notifier:
    """Collect notifications in order and forward them to an optional sink."""

    sink: Optional[Callable[[Notification], None]] = None
    history: List[Notification] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = Lock()

    def notify(
        self,
        title: str,
        description: str = "",
        *,
        variant: str = "default",
        action: Optional[NotificationAction] = None,
    ) -> Notification:
        notification = Notification(title, description, variant, action)
        with self._lock:
            self.history.append(notification)
        if self.sink is not None:
            self.sink(notification)
        return notification

    def success(self, title: str, description: str = "") -> Notification:
        return self.notify(title, description)

    def error(
        self,
        title: str,
        description: str = "",
        *,
        action: Optional[NotificationAction] = None,
    ) -> Notification:
        return self.notify(title, description, variant="destructive", action=action)

    def notify_error(self, exc: BaseException, title: str = "Error") -> Optional[Notification]:
        """Surface *exc* to the user unless it is an expected auth redirect."""

        if isinstance(exc, NotAuthenticatedError):
            logger.info("notification_suppressed", reason="not_authenticated", title=title)
            return None
        if isinstance(exc, BankingSetupError):
            return self.error(
                BANKING_SETUP_TITLE,
                exc.message or BANKING_SETUP_DESCRIPTION,
                action=NotificationAction("Set Up Banking", BANKING_SETUP_PATH),
            )
        title = getattr(exc, "title", None) or title
        message = exc.message if isinstance(exc, LomaError) else str(exc)
        return self.error(title, message or "Something went wrong")

    @property
    def last(self) -> Optional[Notification]:
        with self._lock:
            return self.history[-1] if self.history else None

    def clear(self) -> None:
        with self._lock:
            self.history.clear()


__all__ = [
    "BANKING_SETUP_TITLE",
    "BANKING_SETUP_PATH",
    "Notification",
    "NotificationAction",
    "Notifier",
]

"""Session lifecycle actions.

A session is ``scheduled`` until it is either completed or marked as a
no-show; both are terminal.  Rescheduling keeps the session scheduled and
moves its slot, patching the cached calendar before the server confirms.
Notes and invoices can be attached in any state.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

import structlog

from loma.cache import QueryCache
from loma.config import DEFAULT_CHARGE_AMOUNT
from loma.errors import InvalidTransitionError, SchedulingConflictError, ValidationError
from loma.models import (
    Client,
    CompleteSession,
    InvoiceCreate,
    InvoiceSession,
    NoShowSession,
    RescheduleSession,
    Session,
    SessionNotes,
    parse_session_action,
    validate_request,
)
from loma.notifications import Notifier
from loma.optimistic import patch_session, run_optimistic
from loma.resources import (
    SESSIONS_PATH,
    BillingResource,
    ClientsResource,
    MeetingsResource,
    SessionsResource,
    TasksResource,
    run_mutation,
)
from loma.sanitizer import sanitize_text
from loma.scheduling import CONFLICT_MESSAGE, find_conflicts
from loma.time_utils import ensure_utc, to_iso

logger = structlog.get_logger(__name__)

SessionLike = Union[Session, Mapping[str, Any]]

# action -> (statuses it may start from, status it leaves behind)
_TRANSITIONS: Dict[str, tuple] = {
    "complete": ({"scheduled"}, "completed"),
    "no-show": ({"scheduled"}, "no_show"),
    "reschedule": ({"scheduled"}, "scheduled"),
    "notes": (None, None),
    "invoice": (None, None),
}


def next_status(current: str, action: str) -> str:
    """Return the status *action* moves a session in *current* to."""

    try:
        allowed, target = _TRANSITIONS[action]
    except KeyError:
        raise ValidationError(f"Unknown session action: {action}") from None
    if allowed is None:
        return current
    if current not in allowed:
        raise InvalidTransitionError(
            f"Cannot {action} a session that is {current.replace('_', ' ')}",
            error_code="invalid_session_transition",
            details={"from": current, "action": action},
        )
    return target


def _as_session(session: SessionLike) -> Session:
    if isinstance(session, Session):
        return session
    return validate_request(Session, dict(session))


def _positive_fee(value: Optional[str]) -> Optional[Decimal]:
    if not value:
        return None
    amount = Decimal(value)
    return amount if amount > 0 else None


class SessionActions:
    """Dispatch the actions a clinician can take on a session."""

    def __init__(
        self,
        cache: QueryCache,
        sessions: SessionsResource,
        meetings: MeetingsResource,
        tasks: TasksResource,
        billing: BillingResource,
        clients: ClientsResource,
        notifier: Notifier,
        *,
        default_charge: str = DEFAULT_CHARGE_AMOUNT,
    ) -> None:
        self.cache = cache
        self.sessions = sessions
        self.meetings = meetings
        self.tasks = tasks
        self.billing = billing
        self.clients = clients
        self.notifier = notifier
        self.default_charge = default_charge

    def dispatch(self, session: SessionLike, action: Mapping[str, Any]) -> Any:
        """Validate a raw action body and run it against *session*."""

        request = parse_session_action(dict(action))
        handlers: Dict[type, Callable[[Session, Any], Any]] = {
            CompleteSession: lambda target, _: self.complete(target),
            NoShowSession: lambda target, req: self.no_show(target, invoice_fee=req.invoiceFee),
            RescheduleSession: lambda target, req: self.reschedule(target.id, req.date, req.duration),
            SessionNotes: lambda target, req: self.update_notes(target, req.notes),
            InvoiceSession: self._send_invoice,
        }
        return handlers[type(request)](_as_session(session), request)

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------
    def complete(self, session: SessionLike) -> Any:
        target = _as_session(session)
        request = CompleteSession()

        def _send() -> Any:
            next_status(target.status, request.action)
            return self.sessions.update_status(target.id, request.payload()["status"])

        result = run_mutation("complete_session", self.notifier, _send)
        self._patch_cached(target.id, request.payload())
        self.sessions.invalidate()
        self.tasks.invalidate()

        message = "Session status updated successfully"
        if isinstance(result, dict) and result.get("taskCreated"):
            message += " and session note task created"
        self.notifier.success("Success", message)
        return result

    def no_show(self, session: SessionLike, invoice_fee: bool = False) -> Any:
        """Mark *session* as a no-show, optionally invoicing the client's fee.

        The fee comes from the client's ``noShowFee``; zero counts as no fee.
        Asking to invoice a client without one is rejected before anything
        is sent.
        """

        target = _as_session(session)
        request = NoShowSession(invoiceFee=invoice_fee)

        fee: Optional[Decimal] = None
        if request.invoiceFee:
            client = self._client_for(target)
            fee = _positive_fee(client.noShowFee if client is not None else None)

        def _send() -> Tuple[Any, Optional[InvoiceCreate]]:
            next_status(target.status, request.action)
            invoice: Optional[InvoiceCreate] = None
            if request.invoiceFee:
                if fee is None:
                    raise ValidationError(
                        "No no-show fee is set for this client", error_code="no_show_fee_missing"
                    )
                invoice = validate_request(
                    InvoiceCreate,
                    {
                        "patientId": target.patientId,
                        "sessionId": target.id,
                        "amount": float(fee),
                        "description": f"No-show fee for session on {target.date.date().isoformat()}",
                        "serviceDate": target.date,
                    },
                )
            return self.sessions.update_status(target.id, request.payload()["status"]), invoice

        result, invoice = run_mutation("no_show_session", self.notifier, _send)
        self._patch_cached(target.id, request.payload())
        self.sessions.invalidate()
        self.tasks.invalidate()

        if invoice is None:
            self.notifier.success("Success", "Session status updated successfully")
            return result

        run_mutation(
            "no_show_invoice",
            self.notifier,
            lambda: self.billing.create_invoice(invoice.payload()),
            error_title="Error creating invoice",
        )
        self.notifier.success("Success", "Session marked as no-show and invoice generated")
        return result

    # ------------------------------------------------------------------
    # Slot moves
    # ------------------------------------------------------------------
    def reschedule(
        self,
        session_id: Any,
        new_date: datetime,
        duration: Optional[int] = None,
        *,
        owner_id: Any = None,
    ) -> Any:
        """Move a session to *new_date*, patching the calendar optimistically.

        The slot is checked against cached sessions and meetings first; a
        conflict is reported without contacting the server.  On failure the
        calendar is restored exactly as it was.
        """

        key = self.sessions.key()

        def _move() -> Any:
            request = validate_request(
                RescheduleSession, {"date": ensure_utc(new_date), "duration": duration}
            )
            rows = self.sessions.list()
            current = next(
                (row for row in rows if isinstance(row, dict) and str(row.get("id")) == str(session_id)),
                None,
            )
            if current is not None:
                next_status(current.get("status") or "scheduled", "reschedule")
            length = request.duration or (current or {}).get("duration")
            conflicts = find_conflicts(
                request.date,
                length,
                rows,
                self.meetings.list(),
                exclude_session_id=session_id,
                owner_id=owner_id,
            )
            if conflicts:
                logger.info("session_reschedule_conflict", session_id=session_id, conflicts=len(conflicts))
                raise SchedulingConflictError(CONFLICT_MESSAGE, error_code="slot_conflict")

            return run_optimistic(
                self.cache,
                key,
                partial(patch_session, session_id=session_id, changes=request.payload()),
                lambda: self.sessions.update(session_id, request.payload()),
            )

        result = run_mutation("reschedule_session", self.notifier, _move)
        self.notifier.success("Success", "Session rescheduled successfully")
        return result

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------
    def update_notes(self, session: SessionLike, notes: str) -> Any:
        target = _as_session(session)
        request = validate_request(SessionNotes, {"notes": sanitize_text(notes)})
        result = run_mutation(
            "update_session_notes",
            self.notifier,
            lambda: self.sessions.update(target.id, request.payload()),
        )
        self.sessions.invalidate()
        self.notifier.success("Success", "Session notes saved successfully")
        return result

    def invoice(self, session: SessionLike) -> Any:
        """Invoice the client's session rate for *session*."""

        target = _as_session(session)
        client = self._client_for(target)
        amount = (client.sessionCost if client is not None else None) or self.default_charge
        request = validate_request(
            InvoiceSession,
            {"amount": amount, "description": f"Therapy Session on {target.date.date().isoformat()}"},
        )
        return self._send_invoice(target, request)

    def _send_invoice(self, target: Session, request: InvoiceSession) -> Any:
        result = run_mutation(
            "invoice_session",
            self.notifier,
            lambda: self.sessions.update(target.id, request.payload()),
            error_title="Error creating invoice",
        )
        self.sessions.invalidate()
        self.billing.invalidate()
        self.notifier.success("Success", "Invoice generated successfully")
        return result

    # ------------------------------------------------------------------
    def _client_for(self, session: Session) -> Optional[Client]:
        return session.billed_client or (
            self.clients.get(session.patientId) if session.patientId is not None else None
        )

    def _patch_cached(self, session_id: Any, changes: Dict[str, Any]) -> None:
        for key in self.cache.keys():
            if key[0] == SESSIONS_PATH and self.cache.get_data(key) is not None:
                self.cache.set_data(key, partial(patch_session, session_id=session_id, changes=changes))


__all__ = ["SessionActions", "next_status"]

"""Slot arithmetic and session placement.

Conflict checking treats every session and meeting as the half-open
interval ``[start, start + duration)``, so back-to-back bookings are fine.
Items whose date cannot be parsed are ignored rather than blocking the
calendar.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Any, Iterable, List, Optional, Tuple

import structlog

from loma.errors import ApiError, SchedulingConflictError, ValidationError
from loma.models import SessionCreate
from loma.notifications import Notifier
from loma.resources import MeetingsResource, SessionsResource, run_mutation
from loma.time_utils import ensure_utc, parse_datetime, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_DURATION_MINUTES = 60
MAX_OCCURRENCES = 52

CONFLICT_MESSAGE = "This time slot conflicts with an existing session or meeting"

_RECURRENCE_DAYS = {"none": 0, "weekly": 7, "biweekly": 14}

Interval = Tuple[datetime, datetime]


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def session_interval(item: Any, default_minutes: int = DEFAULT_DURATION_MINUTES) -> Optional[Interval]:
    """Return ``(start, end)`` for a session or meeting, ``None`` if undated."""

    start = parse_datetime(_field(item, "date"))
    if start is None:
        return None
    try:
        minutes = int(_field(item, "duration") or default_minutes)
    except (TypeError, ValueError):
        minutes = default_minutes
    return start, start + timedelta(minutes=minutes)


def intervals_overlap(a: Interval, b: Interval) -> bool:
    return a[0] < b[1] and b[0] < a[1]


def find_conflicts(
    start: datetime,
    duration: Optional[int],
    sessions: Iterable[Any],
    meetings: Iterable[Any],
    *,
    exclude_session_id: Any = None,
    owner_id: Any = None,
) -> List[Any]:
    """Return the sessions and meetings that overlap the candidate slot."""

    begin = ensure_utc(start)
    candidate = (begin, begin + timedelta(minutes=duration or DEFAULT_DURATION_MINUTES))
    conflicts: List[Any] = []

    def _visit(item: Any) -> None:
        if owner_id is not None:
            item_owner = _field(item, "therapistId")
            if item_owner is not None and str(item_owner) != str(owner_id):
                return
        interval = session_interval(item)
        if interval is not None and intervals_overlap(candidate, interval):
            conflicts.append(item)

    for session in sessions:
        if exclude_session_id is not None and str(_field(session, "id")) == str(exclude_session_id):
            continue
        _visit(session)
    for meeting in meetings:
        _visit(meeting)
    return conflicts


def check_time_slot_conflicts(
    start: datetime,
    duration: Optional[int],
    sessions: Iterable[Any],
    meetings: Iterable[Any],
    *,
    exclude_session_id: Any = None,
    owner_id: Any = None,
) -> bool:
    return bool(
        find_conflicts(
            start,
            duration,
            sessions,
            meetings,
            exclude_session_id=exclude_session_id,
            owner_id=owner_id,
        )
    )


def parse_slot(day: Any, hour: Any, minute: Any, period: str) -> datetime:
    """Combine a calendar date with a 12-hour clock reading."""

    if isinstance(day, datetime):
        parsed_day: Optional[date] = day.date()
    elif isinstance(day, date):
        parsed_day = day
    else:
        stamp = parse_datetime(day)
        parsed_day = stamp.date() if stamp is not None else None
    if parsed_day is None:
        raise ValidationError("Invalid date format")
    try:
        hour_value = int(hour)
        minute_value = int(minute)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Please fill in all date and time fields") from exc

    marker = (period or "").strip().upper()
    hour24 = hour_value
    if marker == "PM" and hour_value != 12:
        hour24 += 12
    elif marker == "AM" and hour_value == 12:
        hour24 = 0
    if not 0 <= hour24 <= 23:
        raise ValidationError("Invalid hour")
    if not 0 <= minute_value <= 59:
        raise ValidationError("Invalid minutes")
    return ensure_utc(datetime(parsed_day.year, parsed_day.month, parsed_day.day, hour24, minute_value))


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def occurrence_dates(start: datetime, recurrence: str, occurrences: int) -> List[datetime]:
    if recurrence == "monthly":
        return [_add_months(start, index) for index in range(occurrences)]
    if recurrence not in _RECURRENCE_DAYS:
        raise ValidationError(f"Unknown recurrence: {recurrence}")
    step = timedelta(days=_RECURRENCE_DAYS[recurrence])
    return [start + step * index for index in range(occurrences)]


def build_session_batch(
    patient_id: Optional[int],
    start: Optional[datetime],
    duration: Optional[int],
    session_type: Optional[str] = None,
    recurrence: str = "none",
    occurrences: int = 1,
    *,
    now: Optional[datetime] = None,
) -> List[SessionCreate]:
    """Expand one booking request into the sessions it creates."""

    if start is None:
        raise ValidationError("Failed to create valid session date/time")
    start = ensure_utc(start)
    current = ensure_utc(now) if now is not None else utc_now()
    if start.date() < current.date():
        raise ValidationError("Cannot schedule sessions in the past")
    if not patient_id:
        raise ValidationError("Please select a client")
    if not duration:
        raise ValidationError("Please select session duration")

    count = 1 if recurrence == "none" else int(occurrences or 1)
    if not 1 <= count <= MAX_OCCURRENCES:
        raise ValidationError(f"Number of sessions must be between 1 and {MAX_OCCURRENCES}")

    return [
        SessionCreate(patientId=patient_id, date=when, duration=duration, type=session_type)
        for when in occurrence_dates(start, recurrence, count)
    ]


class SessionScheduler:
    """Place new sessions after checking them against the calendar."""

    def __init__(
        self,
        sessions: SessionsResource,
        meetings: MeetingsResource,
        notifier: Notifier,
        *,
        clock=utc_now,
    ) -> None:
        self.sessions = sessions
        self.meetings = meetings
        self.notifier = notifier
        self._clock = clock

    def schedule(
        self,
        patient_id: Optional[int],
        start: Optional[datetime],
        duration: Optional[int],
        session_type: Optional[str] = None,
        *,
        recurrence: str = "none",
        occurrences: int = 1,
        owner_id: Any = None,
    ) -> List[Any]:
        """Create every occurrence, or none when any slot is taken."""

        def _create() -> List[Any]:
            batch = build_session_batch(
                patient_id,
                start,
                duration,
                session_type,
                recurrence,
                occurrences,
                now=self._clock(),
            )
            existing = self.sessions.list()
            meetings = self.meetings.list()
            for request in batch:
                if check_time_slot_conflicts(
                    request.date, request.duration, existing, meetings, owner_id=owner_id
                ):
                    logger.info("session_slot_conflict", start=request.date.isoformat())
                    raise SchedulingConflictError(CONFLICT_MESSAGE, error_code="slot_conflict")
            created: List[Any] = []
            try:
                for request in batch:
                    created.append(self.sessions.create(request.payload()))
            except ApiError:
                if created:
                    self.sessions.invalidate()
                raise
            return created

        created = run_mutation("schedule_session", self.notifier, _create)
        self.sessions.invalidate()
        self.sessions.refetch()
        logger.info("sessions_scheduled", count=len(created), patient_id=patient_id)
        self.notifier.success("Success", "Sessions scheduled successfully")
        return created


__all__ = [
    "CONFLICT_MESSAGE",
    "DEFAULT_DURATION_MINUTES",
    "SessionScheduler",
    "build_session_batch",
    "check_time_slot_conflicts",
    "find_conflicts",
    "intervals_overlap",
    "occurrence_dates",
    "parse_slot",
    "session_interval",
]

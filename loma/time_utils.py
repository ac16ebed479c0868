"""Timestamp helpers matching the API's wire format."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``.

    Naive values are assumed to already be UTC.
    """

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Coerce an API timestamp into an aware UTC ``datetime``.

    Accepts ``datetime`` and ``date`` objects, ISO strings with or without a
    trailing ``Z`` and plain ``YYYY-MM-DD`` dates.  Returns ``None`` for
    anything else.
    """

    if value in (None, "", b""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    normalised = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return ensure_utc(datetime.fromisoformat(normalised))
    except ValueError:
        return None


def to_iso(dt: datetime) -> str:
    """Serialise *dt* the way browsers do (``2025-03-01T14:00:00.000Z``)."""

    text = ensure_utc(dt).isoformat(timespec="milliseconds")
    if text.endswith("+00:00"):
        return text[:-6] + "Z"
    return text


def to_date_string(dt: datetime | date) -> str:
    """Return the ``YYYY-MM-DD`` part used for claim dates of service."""

    if isinstance(dt, datetime):
        return ensure_utc(dt).date().isoformat()
    return dt.isoformat()


__all__ = ["utc_now", "ensure_utc", "parse_datetime", "to_iso", "to_date_string"]

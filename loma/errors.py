"""Exception hierarchy for API and workflow failures."""

from __future__ import annotations

from typing import Any, Dict, Optional

NOT_AUTHENTICATED = "Not authenticated"

BANKING_SETUP_MARKER = "business banking"

ISSUING_SETUP_MARKERS = (
    "not set up to use Issuing",
    "card_issuing can only be requested",
    "STRIPE_NOT_CONFIGURED",
    "STRIPE_ISSUING_NOT_ENABLED",
)


class LomaError(Exception):
    """Base exception for the practice desk client."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ApiError(LomaError):
    """Non-success HTTP response or transport failure."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        error_code: Optional[str] = None,
        payload: Any = None,
    ):
        super().__init__(message, error_code=error_code, details={"status": status_code})
        self.status_code = status_code
        self.payload = payload


class NotAuthenticatedError(ApiError):
    """The session cookie is missing or expired (HTTP 401)."""

    def __init__(self, payload: Any = None):
        super().__init__(NOT_AUTHENTICATED, 401, payload=payload)


class BankingSetupError(ApiError):
    """The practice has not finished setting up business banking."""


class IssuingNotConfiguredError(ApiError):
    """Card issuing is not enabled for the connected account."""


class ValidationError(LomaError):
    """Input rejected before any request was made."""


class SchedulingConflictError(ValidationError):
    """A proposed slot overlaps an existing session or meeting."""

    title = "Scheduling Conflict"


class InvalidTransitionError(ValidationError):
    """A status change that the entity's lifecycle does not allow."""


def is_banking_setup_error(exc: BaseException) -> bool:
    """Return ``True`` when *exc* reports incomplete business banking."""

    texts = [str(exc)]
    if isinstance(exc, LomaError):
        texts.extend([exc.message, exc.error_code or ""])
    return any(BANKING_SETUP_MARKER in text.lower() for text in texts if text)


def is_issuing_setup_error(exc: BaseException) -> bool:
    """Return ``True`` when *exc* says card issuing is unavailable."""

    if isinstance(exc, IssuingNotConfiguredError):
        return True
    texts = [str(exc)]
    if isinstance(exc, LomaError) and exc.error_code:
        texts.append(exc.error_code)
    return any(marker in text for text in texts for marker in ISSUING_SETUP_MARKERS)


def classify_api_error(exc: ApiError) -> ApiError:
    """Return a more specific error for *exc* when its message calls for one."""

    if isinstance(exc, (NotAuthenticatedError, BankingSetupError, IssuingNotConfiguredError)):
        return exc
    if is_banking_setup_error(exc):
        return BankingSetupError(
            exc.message, exc.status_code, error_code=exc.error_code, payload=exc.payload
        )
    if is_issuing_setup_error(exc):
        return IssuingNotConfiguredError(
            exc.message, exc.status_code, error_code=exc.error_code, payload=exc.payload
        )
    return exc


__all__ = [
    "NOT_AUTHENTICATED",
    "LomaError",
    "ApiError",
    "NotAuthenticatedError",
    "BankingSetupError",
    "IssuingNotConfiguredError",
    "ValidationError",
    "SchedulingConflictError",
    "InvalidTransitionError",
    "is_banking_setup_error",
    "is_issuing_setup_error",
    "classify_api_error",
]

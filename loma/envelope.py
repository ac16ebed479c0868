"""Decoding of the API's two list envelopes.

Collection endpoints answer either with a bare JSON array or with
``{"success": true, "data": [...]}``.  :func:`normalize_collection` is the
one place that reconciles the two, and the ``fetch_*`` helpers make list
reads total: a failed or malformed read becomes ``[]`` so callers render
an empty state instead of branching on errors.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from loma.api_client import ApiClient
from loma.errors import LomaError, NotAuthenticatedError

logger = structlog.get_logger(__name__)


class ApiEnvelope(BaseModel):
    """Object-shaped API response."""

    success: Optional[bool] = None
    data: Any = None
    error: Optional[str] = None
    message: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    def extra(self, name: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(name, default)


def decode_envelope(body: Any) -> Optional[ApiEnvelope]:
    """Return *body* as an :class:`ApiEnvelope`, or ``None`` if it is not an object."""

    if not isinstance(body, Mapping):
        return None
    try:
        return ApiEnvelope.model_validate(dict(body))
    except PydanticValidationError:
        return None


def normalize_collection(body: Any) -> List[Any]:
    """Return the list carried by *body*; never ``None``."""

    if isinstance(body, list):
        return body
    envelope = decode_envelope(body)
    if envelope is not None and envelope.success and isinstance(envelope.data, list):
        return envelope.data
    return []


def fetch_collection(
    api: ApiClient,
    path: str,
    params: Optional[Mapping[str, Any]] = None,
) -> List[Any]:
    """GET *path* and return the normalised list, ``[]`` on any failure."""

    try:
        body = api.get(path, params=params)
    except NotAuthenticatedError:
        logger.info("collection_fetch_not_authenticated", path=path)
        return []
    except LomaError as exc:
        logger.error("collection_fetch_failed", path=path, error=exc.message)
        return []
    items = normalize_collection(body)
    if not items and not isinstance(body, (list, dict)):
        logger.warning("collection_fetch_unexpected_body", path=path, body_type=type(body).__name__)
    return items


def fetch_object(api: ApiClient, path: str) -> Optional[Dict[str, Any]]:
    """GET a single-object resource, unwrapping ``{success, data}`` if present."""

    try:
        body = api.get(path)
    except LomaError as exc:
        logger.error("object_fetch_failed", path=path, error=exc.message)
        return None
    envelope = decode_envelope(body)
    if envelope is None or envelope.success is False:
        return None
    if envelope.success is not None and isinstance(envelope.data, Mapping):
        return dict(envelope.data)
    return dict(body)


__all__ = [
    "ApiEnvelope",
    "decode_envelope",
    "normalize_collection",
    "fetch_collection",
    "fetch_object",
]

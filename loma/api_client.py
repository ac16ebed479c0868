"""Credentialed JSON client for the practice API.

:class:`ApiClient` wraps a :class:`requests.Session` so the session cookie
issued at login rides along with every call.  All failures are mapped onto
:mod:`loma.errors`: a 401 becomes :class:`NotAuthenticatedError`, other
non-2xx responses become :class:`ApiError` carrying the server's
``message`` (or ``error``) text, and transport problems become an
``ApiError`` without a status code.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional

import requests
import structlog

from loma.config import Settings, get_settings
from loma.errors import ApiError, NotAuthenticatedError
from loma.metrics import API_FAILURES

logger = structlog.get_logger(__name__)

JSON_CONTENT_TYPE = "application/json"


_NO_BODY = object()


def _decode_json(response: requests.Response) -> Any:
    """Return the decoded JSON body, or ``_NO_BODY`` when it is not JSON.

    Responses without a ``Content-Type`` are sniffed; anything declaring a
    non-JSON type is left alone.
    """

    content_type = response.headers.get("Content-Type") or ""
    if content_type and JSON_CONTENT_TYPE not in content_type:
        return _NO_BODY
    if not response.content:
        return _NO_BODY
    try:
        return response.json()
    except ValueError:
        return _NO_BODY


def _error_message(response: requests.Response) -> tuple[str, Optional[str], Any]:
    """Return ``(message, error_code, payload)`` for a failed response."""

    fallback = f"API request failed: {response.status_code}"
    payload = _decode_json(response)
    if payload is not _NO_BODY:
        if isinstance(payload, dict):
            error_code = payload.get("error") if isinstance(payload.get("error"), str) else None
            message = payload.get("message") or error_code or fallback
            return str(message), error_code, payload
        return fallback, None, payload
    text = (response.text or "").strip()
    return text or fallback, None, text or None


class ApiClient:
    """Thin HTTP helper: credentials, JSON encoding and uniform errors."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        resolved = settings or get_settings()
        self.base_url = (base_url or resolved.base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else resolved.request_timeout
        self.session = session or requests.Session()
        self._on_clear_cache: Optional[Callable[[], None]] = None

    def on_clear_cache(self, callback: Optional[Callable[[], None]]) -> None:
        """Register *callback* for responses that carry ``clearCache: true``."""

        self._on_clear_cache = callback

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Send a request and return the decoded body.

        JSON responses are decoded; anything else is returned as text.
        """

        headers: Dict[str, str] = {"Accept": JSON_CONTENT_TYPE}
        if json is not None:
            headers["Content-Type"] = JSON_CONTENT_TYPE
        url = self.url(path)
        try:
            response = self.session.request(
                method=method,
                url=url,
                json=json,
                params=dict(params) if params else None,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            API_FAILURES.labels(reason="network_failure").inc()
            logger.warning("api_request_transport_failed", method=method, path=path, error=str(exc))
            raise ApiError(str(exc) or "Network request failed") from exc

        if response.status_code == 401:
            API_FAILURES.labels(reason="not_authenticated").inc()
            logger.info("api_request_not_authenticated", method=method, path=path)
            raise NotAuthenticatedError()

        if not response.ok:
            message, error_code, payload = _error_message(response)
            reason = "server_error" if response.status_code >= 500 else "client_error"
            API_FAILURES.labels(reason=reason).inc()
            logger.warning(
                "api_request_failed",
                method=method,
                path=path,
                status=response.status_code,
                message=message,
            )
            raise ApiError(message, response.status_code, error_code=error_code, payload=payload)

        body = _decode_json(response)
        if body is _NO_BODY:
            content_type = response.headers.get("Content-Type") or ""
            if JSON_CONTENT_TYPE in content_type and response.content:
                API_FAILURES.labels(reason="decode_failure").inc()
                raise ApiError("Malformed JSON response", response.status_code)
            return response.text

        if isinstance(body, dict) and body.get("clearCache") and self._on_clear_cache is not None:
            logger.info("api_clear_cache_requested", path=path)
            self._on_clear_cache()
        return body

    def get(self, path: str, *, params: Optional[Mapping[str, Any]] = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, json: Any = None) -> Any:
        return self.request("POST", path, json=json if json is not None else {})

    def put(self, path: str, json: Any = None) -> Any:
        return self.request("PUT", path, json=json if json is not None else {})

    def patch(self, path: str, json: Any = None) -> Any:
        return self.request("PATCH", path, json=json if json is not None else {})


__all__ = ["ApiClient"]

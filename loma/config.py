"""Runtime configuration for the practice desk client."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

DEFAULT_API_URL = "http://localhost:5000"
DEFAULT_REQUEST_TIMEOUT = 10
DEFAULT_LIST_STALE_SECONDS = 30
DEFAULT_CHARGE_AMOUNT = "150.00"


@dataclass(frozen=True)
class Settings:
    """Resolved client configuration."""

    api_url: str = DEFAULT_API_URL
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    list_stale_seconds: int = DEFAULT_LIST_STALE_SECONDS
    default_charge: str = DEFAULT_CHARGE_AMOUNT
    log_level: str = "INFO"

    @property
    def base_url(self) -> str:
        return self.api_url.rstrip("/")


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def settings_from_env() -> Settings:
    """Build :class:`Settings` from the current environment."""

    timeout = _get_int_env("LOMA_REQUEST_TIMEOUT")
    stale = _get_int_env("LOMA_LIST_STALE_SECONDS")
    return Settings(
        api_url=os.getenv("LOMA_API_URL") or DEFAULT_API_URL,
        request_timeout=DEFAULT_REQUEST_TIMEOUT if timeout is None else timeout,
        list_stale_seconds=DEFAULT_LIST_STALE_SECONDS if stale is None else stale,
        default_charge=os.getenv("LOMA_DEFAULT_CHARGE") or DEFAULT_CHARGE_AMOUNT,
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings, reading ``.env`` on first use."""

    load_dotenv()
    return settings_from_env()


__all__ = [
    "DEFAULT_CHARGE_AMOUNT",
    "Settings",
    "get_settings",
    "settings_from_env",
]

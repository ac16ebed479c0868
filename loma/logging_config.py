"""structlog configuration shared by every module in the package."""

from __future__ import annotations

import logging
from typing import Optional

import structlog

_CONFIGURED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging and structlog with JSON output.

    Safe to call more than once; only the first call installs processors.
    """

    global _CONFIGURED

    level_name = (level or "INFO").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format="%(message)s")
    if _CONFIGURED:
        return

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


__all__ = ["configure_logging"]

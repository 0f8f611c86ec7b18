"""Structlog setup for the decision service's JSON event log."""

from __future__ import annotations

import logging
import os

import structlog

SERVICE_NAME = "portal-decisions"
LOG_LEVEL = logging.INFO


def add_service_name(_logger, _method_name, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def level_from_env(default: int = LOG_LEVEL) -> int:
    """Read ``LOG_LEVEL`` (a level name such as ``debug``), falling back to *default*."""

    name = os.getenv("LOG_LEVEL", "").strip().upper()
    if not name:
        return default
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else default


def configure_logging(level: int | None = None) -> None:
    """Emit decision events as JSON lines tagged with the service name.

    Tracebacks from ``exc_info=True`` are rendered into the ``exception`` key so
    side-effect failures after a commit stay visible.
    """

    resolved = level if level is not None else level_from_env()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            add_service_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(resolved),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=resolved, format="%(message)s")

"""Portal decision service package initialisation."""

from .background import call_with_timeout, run_async  # noqa: F401
from .config import AppSettings, get_settings  # noqa: F401
from .db import Base, get_engine, get_session_factory, session_scope  # noqa: F401
from .logging_config import configure_logging  # noqa: F401
from .models import Application, BookingRequest, FormResponse  # noqa: F401

__all__ = [
    "AppSettings",
    "get_settings",
    "run_async",
    "call_with_timeout",
    "Base",
    "get_engine",
    "get_session_factory",
    "session_scope",
    "Application",
    "BookingRequest",
    "FormResponse",
    "configure_logging",
]

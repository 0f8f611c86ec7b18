"""Engine, session and schema helpers for the Status Store database."""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Dict, Generator, List

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from portal_decisions.config import get_settings

Base = declarative_base()

SQLITE_BUSY_TIMEOUT_SECONDS = 15


def engine_options(database_url: str) -> Dict[str, Any]:
    """Return ``create_engine`` keyword arguments suited to *database_url*."""

    if make_url(database_url).get_backend_name() == "sqlite":
        # Remote calls run on worker threads, so pooled connections cross threads.
        return {
            "connect_args": {
                "check_same_thread": False,
                "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
            }
        }
    return {"pool_pre_ping": True}


@lru_cache()
def get_engine() -> Engine:
    settings = get_settings()
    return create_engine(settings.database_url, echo=False, **engine_options(settings.database_url))


@lru_cache()
def get_session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Run one unit of work; commit on success, roll back and re-raise on error."""

    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception as exc:
        session.rollback()
        structlog.get_logger().debug("db_session_rolled_back", error=str(exc))
        raise
    finally:
        session.close()


def reset_schema(*, drop_existing: bool = True) -> List[str]:
    """Recreate the decision tables on the configured database.

    Returns the names of the tables that now exist.
    """

    from portal_decisions import models  # noqa: F401  registers the tables on Base

    engine = get_engine()
    if drop_existing:
        Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    return sorted(Base.metadata.tables)

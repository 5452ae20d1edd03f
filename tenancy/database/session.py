"""
Engine and session wiring.

Routes depend on get_db_session() for a request-scoped Session; jobs call
get_session_factory() and manage their own sessions. The engine is built
lazily from DATABASE_URL on first use.
"""

import logging
import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from tenancy.platform.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)

_engine = None
_SessionLocal = None


def _get_database_url() -> str:
    """Read DATABASE_URL, rewriting the legacy postgres:// scheme."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine():
    """Get or create the database engine singleton."""
    global _engine
    if _engine is None:
        database_url = _get_database_url()
        kwargs = {"pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            kwargs.update(pool_size=5, max_overflow=10, pool_recycle=1800)
        _engine = create_engine(database_url, **kwargs)
        logger.info("Database engine created")
    return _engine


def get_session_factory() -> sessionmaker:
    """Return the process-wide sessionmaker."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def get_db_session() -> Generator[Session, None, None]:
    """Yield a Session per request; 503 when DATABASE_URL is unset."""
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise ServiceUnavailableError("Database not configured") from e

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def reset_engine() -> None:
    """Dispose the engine singleton (tests and shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone

from fastapi import HTTPException
from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from ridesync.config.settings import settings

# Lazy initialization so importing the app never opens a connection
_engine = None
_SessionLocal = None


def _get_engine():
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        logger.info("Initializing database engine")
        connect_args = {}
        if "sqlite" in settings.database_url.lower():
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {"connect_timeout": 10, "application_name": "ridesync"}

        _engine = create_engine(
            settings.database_url,
            connect_args=connect_args,
            echo=False,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
        logger.info("Database engine initialized")
    return _engine


def get_engine():
    """Public accessor for the lazily created engine."""
    return _get_engine()


def _get_session_local():
    """Get or create the session factory (lazy initialization)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_get_engine(), expire_on_commit=False)
        logger.info("Database session factory initialized")
    return _SessionLocal


def get_db() -> Generator[Session, None, None]:
    """Get database session for FastAPI dependencies.

    For non-FastAPI code that needs a context manager, use get_session() instead.

    Yields:
        Session: SQLAlchemy database session
    """
    session = _get_session_local()()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get database session context manager.

    Commits on clean exit. HTTPException is re-raised without logging;
    any other exception is logged, rolled back and re-raised.
    """
    session = _get_session_local()()
    try:
        yield session
        session.commit()
    except HTTPException:
        session.rollback()
        raise
    except Exception as e:
        logger.error(f"Database session error, rolling back: {type(e).__name__}: {e}")
        session.rollback()
        raise
    finally:
        session.close()


def as_utc(value: datetime | None) -> datetime | None:
    """Return value as an aware UTC datetime.

    SQLite drops tzinfo on round-trip, so naive values read back from the
    database are treated as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

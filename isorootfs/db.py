"""Cache index database for isorootfs.

The index records which URLs have been fetched, where they live on disk and
which digest they were verified against. Writers commit per artifact, so
SQLite connections wait on a busy database instead of failing at once.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from isorootfs.config import get_settings

# Seconds a SQLite connection waits for another writer's lock
SQLITE_BUSY_TIMEOUT = 30.0


class Base(DeclarativeBase):
    """Base class for cache index models."""

    pass


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the cache index.

    For file-backed SQLite the parent directory of the database file is
    created, so a fresh cache root works without setup.

    Args:
        db_url: Database URL. Defaults to ``settings.db_url``.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        db_url = get_settings().db_url

    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
        if db_url.startswith("sqlite:///") and ":memory:" not in db_url:
            Path(db_url.removeprefix("sqlite:///")).parent.mkdir(
                parents=True, exist_ok=True
            )

    return create_engine(db_url, connect_args=connect_args)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory whose objects stay usable after commit."""
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Open a session that commits leftovers on success and rolls back on error.

    Work already committed inside the block (the fetcher commits after each
    artifact) is not affected by the rollback.

    Args:
        session_factory: Optional session factory. Creates one if not provided.

    Yields:
        SQLAlchemy Session instance.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the cache index tables if they do not exist."""
    # Register models with the mapper before creating tables
    from isorootfs.fetch import models as fetch_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "SQLITE_BUSY_TIMEOUT",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]

"""SQLite index database behind the artifact cache."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

# Seconds a writer waits on another run's transaction before failing
SQLITE_BUSY_TIMEOUT = 30


class Base(DeclarativeBase):
    """Declarative base for the cache index tables."""


def get_engine(db_url: str) -> Engine:
    """Create an engine, making room for an SQLite file if needed."""
    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite:///"):
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
        db_path = db_url.removeprefix("sqlite:///")
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(db_url, connect_args=connect_args)


def open_index(db_url: str) -> sessionmaker[Session]:
    """Create the index tables if missing and return a session factory.

    Args:
        db_url: SQLAlchemy database URL.

    Returns:
        Session factory whose objects stay readable after commit.
    """
    from unraid_kmod.cache import models  # noqa: F401

    engine = get_engine(db_url)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Run a block in one transaction: commit on success, roll back on error."""
    with session_factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


__all__ = ["Base", "get_engine", "get_session", "open_index"]

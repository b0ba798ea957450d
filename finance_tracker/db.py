from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from finance_tracker.config import settings

_JOURNAL_MODES = frozenset({"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"})


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""


def create_db_engine(
    database_url: str,
    busy_timeout_ms: int | None = None,
    journal_mode: str | None = None,
    **engine_kwargs: Any,
) -> Engine:
    """Build an engine; SQLite connections get foreign keys and lock pragmas.

    Foreign keys must be on for lot rows to follow their owner on delete.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, future=True, **engine_kwargs)

    timeout_ms = max(
        settings.sqlite_busy_timeout_ms if busy_timeout_ms is None else busy_timeout_ms, 0
    )
    mode = (journal_mode or settings.sqlite_journal_mode).strip().upper()
    if mode not in _JOURNAL_MODES:
        mode = "WAL"

    connect_args = {"check_same_thread": False, "timeout": timeout_ms / 1000.0}
    connect_args.update(engine_kwargs.pop("connect_args", {}))
    engine = create_engine(database_url, connect_args=connect_args, future=True, **engine_kwargs)

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout={timeout_ms}")
        cursor.execute(f"PRAGMA journal_mode={mode}")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, class_=Session)


engine = create_db_engine(settings.database_url)
SessionLocal = session_factory(engine)


def init_db(bind: Engine | None = None) -> None:
    """Create the lot, snapshot and rate tables if they do not exist."""
    from finance_tracker import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a request-scoped SQLAlchemy session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

"""SQLAlchemy engine and sessions backing the SQL persistence collaborators."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import date, datetime
import json
from pathlib import Path
from typing import TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from libra.config import load_config
from libra.logging import get_logger
from libra.logging_events import log_event

logger = get_logger(__name__)

T = TypeVar("T")

SessionCallable = Callable[[Session], T]
SessionFactory = Callable[[], AbstractContextManager[Session]]


class Base(DeclarativeBase):
    pass


_engine: Engine | None = None
_sessions: sessionmaker[Session] | None = None


def _json_default(value: object) -> str:
    # job results embed manga records, which carry release dates
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_serializer(value: object) -> str:
    return json.dumps(value, default=_json_default)


def _sqlite_file(url: URL) -> Path | None:
    if not url.drivername.startswith("sqlite"):
        return None
    database = url.database
    if not database or database == ":memory:":
        return None
    return Path(database).expanduser().resolve()


def _session_maker() -> sessionmaker[Session]:
    """Return the session factory for the configured URL, creating tables on first use."""

    global _engine, _sessions

    url = make_url(load_config().database.url)
    rendered = url.render_as_string(hide_password=False)
    if (
        _engine is not None
        and _sessions is not None
        and _engine.url.render_as_string(hide_password=False) == rendered
    ):
        return _sessions

    reset_engine_for_tests()
    path = _sqlite_file(url)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
    connect_args = {"check_same_thread": False} if url.drivername.startswith("sqlite") else {}
    engine = create_engine(url, connect_args=connect_args, json_serializer=_json_serializer)

    from libra import models  # noqa: F401

    Base.metadata.create_all(bind=engine, checkfirst=True)
    _engine = engine
    _sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    log_event(
        logger,
        "database.ready",
        component="db",
        status="ready",
        dialect=url.get_backend_name(),
        tables=len(Base.metadata.tables),
    )
    return _sessions


@contextmanager
def session_scope() -> Iterator[Session]:
    session = _session_maker()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """Create the database file (for SQLite) and the job, manga and chapter tables."""

    _session_maker()


def reset_engine_for_tests() -> None:
    """Drop the cached engine so the next session follows ``DATABASE_URL`` again."""

    global _engine, _sessions

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _sessions = None


def _call_with_session(func: SessionCallable[T], *, factory: SessionFactory | None = None) -> T:
    context = factory() if factory is not None else session_scope()
    with context as session:
        return func(session)


async def run_session(func: SessionCallable[T], *, factory: SessionFactory | None = None) -> T:
    """Execute ``func`` with a database session in a worker thread."""

    return await asyncio.to_thread(_call_with_session, func, factory=factory)


__all__ = [
    "Base",
    "SessionFactory",
    "session_scope",
    "run_session",
    "init_db",
    "reset_engine_for_tests",
]

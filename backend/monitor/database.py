"""Engine and session factory for the monitor store.

SQLite is the default for local runs; point ``MONITOR_DATABASE_URL`` at
PostgreSQL in production.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

DATABASE_URL = os.environ.get("MONITOR_DATABASE_URL", "sqlite:///./monitor.db")


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # request handlers and the snapshot worker share the connection pool
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(DATABASE_URL, future=True, **_engine_options(DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

_CONFLICT_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


def conflict_insert(session: Session) -> Optional[Callable]:
    """Dialect ``insert`` that supports ``ON CONFLICT``, or ``None`` elsewhere."""
    return _CONFLICT_INSERTS.get(session.get_bind().dialect.name)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session that commits on success and rolls back on any error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the ``DateTime`` columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

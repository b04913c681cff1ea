"""Engine and session factory for the metadata store.

Several scheduler threads, and possibly several scheduler processes, write
to the same database. On SQLite that means one file shared through WAL with
a busy timeout long enough to ride out another writer's commit; on a server
database the pool checks connections before handing them out.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

SQLITE_BUSY_TIMEOUT = 30.0


def _is_memory_sqlite(url: str) -> bool:
    return ":memory:" in url or url in ("sqlite://", "sqlite:///")


def create_docbuild_engine(url: str, *, echo: bool = False, **kwargs: Any) -> Engine:
    """Engine for *url* (``sqlite:///path`` or any SQLAlchemy server URL)."""
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True, **kwargs)

    kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT})
    engine = create_engine(url, echo=echo, **kwargs)
    wal = not _is_memory_sqlite(url)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            if wal:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    return engine


class DocbuildSession(Session):
    """Session that keeps loaded attributes after commit.

    The store converts rows into dataclasses once the transaction is over;
    expired attributes would reload against a closed session.
    """

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def docbuild_session_factory(engine: Engine) -> sessionmaker[DocbuildSession]:
    return sessionmaker(bind=engine, class_=DocbuildSession)

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import common.audit  # noqa: F401  registers system_event on the metadata
import lending_domain.models  # noqa: F401  registers indexer tables

log = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def create_db_engine(url: str, *, echo: bool = False) -> Engine:
    """Build an engine for *url*.

    In-memory SQLite gets a ``StaticPool`` so every session sees the same
    database; file SQLite runs in WAL mode so the monitor can read while the
    dispatcher writes.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):  # pragma: no cover - driver hook
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA busy_timeout=5000")
            cur.close()

        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Initialise tables (idempotent)."""
    SQLModel.metadata.create_all(engine)
    log.info("Schema ready on %s", engine.url.render_as_string(hide_password=True))


def session_factory(engine: Engine) -> SessionFactory:
    # expire_on_commit=False so snapshots read inside a session stay usable after it closes
    return lambda: Session(engine, expire_on_commit=False)

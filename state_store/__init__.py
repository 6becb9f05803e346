"""Persistence for the lending indexer: engine/session helpers and repositories."""

from .db import create_db_engine, init_db, session_factory
from .locks import AggregateLocks

__all__ = ["AggregateLocks", "create_db_engine", "init_db", "session_factory"]

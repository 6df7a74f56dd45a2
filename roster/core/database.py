"""Database configuration and session management for SQLite.

This module configures the SQLite engine that backs the SQL storage
backend, the shared source of truth every roster client writes to and
receives change notifications from.

SQLite Configuration Choices:
    - **WAL (Write-Ahead Logging)**: Allows concurrent readers while writing.
      Several clients may read the roster while another one commits.

    - **Foreign Keys**: SQLite has foreign key support but it's disabled by
      default for backwards compatibility. We enable it so that a
      guest_group row can never reference a guest or group that does not
      exist, which is the persisted half of the no-orphan invariant.

    - **check_same_thread=False**: The backend is driven from asyncio
      tasks; connections may be touched from whichever thread runs the loop.
"""

from sqlalchemy import event as sa_event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from roster.core.config import settings

connect_args = {"check_same_thread": False}

engine = create_engine(
    settings.database_url,
    connect_args=connect_args,
    echo=settings.debug,  # Log SQL statements when DEBUG=true
)


@sa_event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite pragmas on each new connection.

    These settings are connection-level, not database-level, so they must
    be set each time a new connection is established from the pool. The
    listener is registered on the Engine class so engines built elsewhere
    (tests use an in-memory engine) get the same pragmas.
    """
    if type(dbapi_connection).__module__.split(".")[0] != "sqlite3":
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_and_tables(bind: Engine | None = None):
    """Create all database tables."""
    # Import for side effect: registers the table models on SQLModel.metadata
    import roster.models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)

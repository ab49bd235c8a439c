"""Database engine and session management."""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine, event, make_url
from sqlalchemy.engine import Engine  # noqa: TCH002
from sqlalchemy.orm import Session, sessionmaker

from candyclash.state.models import Base

# Seconds a writer waits for another connection's lock before failing.
SQLITE_BUSY_TIMEOUT = 30.0


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy, not pysqlite, issue BEGIN so SAVEPOINTs nest correctly.

    Transactions open with ``BEGIN IMMEDIATE``: the write lock is taken up
    front, so concurrent units of work queue on the busy timeout instead of
    failing with "database is locked" when they later try to write.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str = "sqlite:///candyclash.db", echo: bool = False) -> Engine:
    """Create a SQLAlchemy engine."""
    if make_url(url).get_backend_name() == "sqlite":
        engine = create_engine(url, echo=echo, connect_args={"timeout": SQLITE_BUSY_TIMEOUT})
        _enable_sqlite_savepoints(engine)
        return engine
    return create_engine(url, echo=echo)


def init_db(engine: Engine) -> None:
    """Create all tables if they don't exist."""
    Base.metadata.create_all(engine)


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Get a session factory bound to the given engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)

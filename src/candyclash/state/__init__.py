"""Ledger persistence: the abstract interface and its in-memory and SQL backends."""

from candyclash.state.database import create_db_engine, get_session_factory, init_db
from candyclash.state.ledger import Ledger
from candyclash.state.memory import InMemoryLedger
from candyclash.state.repository import SqlLedger

__all__ = [
    "InMemoryLedger",
    "Ledger",
    "SqlLedger",
    "create_db_engine",
    "get_session_factory",
    "init_db",
]

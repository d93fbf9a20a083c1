"""
Database layer — Multi-backend persistence of message lifecycle records.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  item = await store.get_item("mq1")
"""
from database.models import Base, MessageQueueRow, LeadRow, AgentRow
from database.session import (
    create_engine, create_session_factory, get_engine, get_session, init_db, close_db,
)
from database.store_base import BaseStatusStore
from database.store import SqlStatusStore
from database.store_memory import InMemoryStatusStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "MessageQueueRow", "LeadRow", "AgentRow",
    # Session management
    "create_engine", "create_session_factory",
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseStatusStore",
    # Store backends
    "SqlStatusStore", "InMemoryStatusStore",
    # Factory
    "create_store",
]

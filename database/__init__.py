"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  await store.connect()
  due = await store.find_due(now, max_retries=3)
"""
from database.models import (
    Base, UserRow, ScheduledMessageRow, ConversationRow, MessageRow,
)
from database.session import Database
from database.store_base import BaseMessagingStore
from database.store import SqlMessagingStore
from database.store_memory import InMemoryMessagingStore
from database.store_factory import create_store
from database.directory import ConversationDirectory

__all__ = [
    # ORM models
    "Base", "UserRow", "ScheduledMessageRow", "ConversationRow", "MessageRow",
    # Session management
    "Database",
    # Store interface
    "BaseMessagingStore",
    # Store backends
    "SqlMessagingStore", "InMemoryMessagingStore",
    # Factory
    "create_store",
    # Conversation directory
    "ConversationDirectory",
]

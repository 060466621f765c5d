"""
Database layer - call, turn and event persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  call = await store.get_call("c1")
"""
from database.audio_store import AudioStore
from database.models import Base, CallEventRow, CallRow, CampaignRow, ContactRow, ConversationTurnRow
from database.session import close_db, configure, get_engine, get_session, init_db
from database.store import SqlCallStore
from database.store_base import BaseCallStore
from database.store_factory import create_store, get_store, reset_store
from database.store_memory import InMemoryCallStore

__all__ = [
    # ORM models
    "Base", "CallRow", "CallEventRow", "CampaignRow", "ContactRow", "ConversationTurnRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "configure",
    # Store interface and backends
    "BaseCallStore", "SqlCallStore", "InMemoryCallStore",
    # Factory
    "create_store", "get_store", "reset_store",
    "AudioStore",
]

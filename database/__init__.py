"""
Database layer — Multi-backend persistence for paused execution state and
customer context.

Backends:
  - File (JSON files on disk, default)
  - In-memory (dict-based, for development/testing)
  - Redis (keys with TTL, sorted-set index)
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)

Quick start:
  from database import create_stores
  run_states, contexts = create_stores(PersistenceConfig(backend="memory"))
  await run_states.init(); await contexts.init()
"""
from database.store_base import (
    RecordStore, RunStateStore, CustomerContextStore,
    RunStateCodec, ContextCodec, StoredRecord,
)
from database.store_file import FileRunStateStore, FileContextStore
from database.store_memory import InMemoryRunStateStore, InMemoryContextStore
from database.store_factory import create_stores

__all__ = [
    # Store interface
    "RecordStore", "RunStateStore", "CustomerContextStore",
    "RunStateCodec", "ContextCodec", "StoredRecord",
    # Store backends (Redis / SQL imported from their modules on demand)
    "FileRunStateStore", "FileContextStore",
    "InMemoryRunStateStore", "InMemoryContextStore",
    # Factory
    "create_stores",
]

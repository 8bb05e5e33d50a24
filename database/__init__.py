"""
Database layer — Session persistence between turns.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON file on disk, for small deployments)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  session = await store.get("a1b2c3")
"""
from database.store_base import BaseSessionStore
from database.store_memory import InMemorySessionStore
from database.store_file import FileSessionStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # Store interface
    "BaseSessionStore",
    # Store backends
    "InMemorySessionStore", "FileSessionStore",
    # Factory
    "create_store", "get_store", "reset_store",
]

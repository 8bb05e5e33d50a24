"""
Store Factory — Create the session store backend from configuration.

Configuration in settings.yaml:
    database:
      # Session store backend
      #   "memory"   — In-memory dicts (development, testing)
      #   "file"     — JSON file on disk (small deployments, demos)
      store_backend: "memory"

      # For file backend: directory path
      store_file_dir: "./data/sessions"
      store_flush_interval_s: 0       # seconds; 0 writes on every save

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(config)     # Create from config dict
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseSessionStore

logger = structlog.get_logger()

_instance: Optional[BaseSessionStore] = None


def create_store(config: dict = None) -> BaseSessionStore:
    """
    Factory: create the appropriate session store backend.

    Args:
        config: dict with keys:
            store_backend: "memory" | "file"  (default: "memory")
            store_file_dir: str (for file backend, default: "./data/sessions")
            store_flush_interval_s: float (for file backend, default: 0)
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("store_backend", "memory")

    if backend == "file":
        from database.store_file import FileSessionStore
        data_dir = config.get("store_file_dir", "./data/sessions")
        _instance = FileSessionStore(
            data_dir=data_dir,
            flush_interval_s=float(config.get("store_flush_interval_s", 0) or 0),
        )
        logger.info("store_created", backend="file", data_dir=data_dir)

    else:  # "memory" or default
        from database.store_memory import InMemorySessionStore
        _instance = InMemorySessionStore()
        logger.info("store_created", backend="memory")

    return _instance


def get_store() -> BaseSessionStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None

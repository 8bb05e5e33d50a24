"""
FileSessionStore — JSON file-backed session store that survives restarts.

Data layout:
  {data_dir}/
    sessions.json        {session_id: session snapshot}

Features:
  - Survives process restarts (unlike InMemorySessionStore)
  - No external dependencies (no database server, no Redis)
  - Flush on every mutation, or batched with flush_interval_s > 0
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from pathlib import Path
from typing import Optional

from database.store_memory import InMemorySessionStore
from models.schemas import SessionContext

logger = structlog.get_logger()

_FILE_NAME = "sessions.json"


class FileSessionStore(InMemorySessionStore):
    """
    Extends InMemorySessionStore with JSON file persistence.

    On init: loads all sessions from disk into memory.
    On every write: flushes the sessions file to disk.
    """

    def __init__(self, data_dir: str = "./data/sessions", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty = False
        self._flush_task: Optional[asyncio.Task] = None
        self._load()
        logger.info("file_session_store_initialized", data_dir=str(self._data_dir),
                    sessions=len(self._sessions))

    @property
    def _path(self) -> Path:
        return self._data_dir / _FILE_NAME

    def _load(self):
        if not self._path.exists():
            return
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_session_store_load_error", path=str(self._path), error=str(e))
            return
        self._sessions = data if isinstance(data, dict) else {}
        self._rebuild_index()

    def _rebuild_index(self):
        self._contact_index.clear()
        for sid, snapshot in self._sessions.items():
            self._contact_index.setdefault(snapshot["contact"]["id"], []).append(sid)

    def _flush(self):
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._sessions, f, indent=2, default=str)
        tmp_path.replace(self._path)  # atomic on POSIX

    def _mark_dirty(self):
        if self._flush_interval <= 0:
            self._flush()
            return
        self._dirty = True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        await asyncio.sleep(self._flush_interval)
        if self._dirty:
            self._dirty = False
            self._flush()

    def flush_all(self):
        """Force flush to disk."""
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = None
        self._dirty = False
        self._flush()
        logger.info("file_session_store_flushed")

    # ── Override write methods to trigger persistence ──────

    async def save(self, context: SessionContext) -> None:
        await super().save(context)
        self._mark_dirty()

    async def delete(self, session_id: str) -> bool:
        removed = await super().delete(session_id)
        if removed:
            self._mark_dirty()
        return removed

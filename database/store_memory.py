"""
InMemorySessionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Sessions kept as JSON-compatible snapshots, so the stored copy is
    never aliased with a live context
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import copy
import structlog
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseSessionStore
from models.schemas import SessionContext, SessionStatus

logger = structlog.get_logger()


def _restore(data: dict[str, Any]) -> SessionContext:
    # model_validate keeps nested dicts by reference
    return SessionContext.model_validate(copy.deepcopy(data))


def _last_activity(data: dict[str, Any]) -> datetime:
    return datetime.fromisoformat(data["last_activity_at"].replace("Z", "+00:00"))


class InMemorySessionStore(BaseSessionStore):

    def __init__(self):
        self._sessions: dict[str, dict[str, Any]] = {}     # session_id → snapshot
        self._contact_index: dict[str, list[str]] = {}     # contact_id → [session_ids]
        logger.info("inmemory_session_store_initialized")

    async def get(self, session_id: str) -> Optional[SessionContext]:
        data = self._sessions.get(session_id)
        return _restore(data) if data else None

    async def save(self, context: SessionContext) -> None:
        self._sessions[context.session_id] = context.model_dump(mode="json")
        ids = self._contact_index.setdefault(context.contact.id, [])
        if context.session_id not in ids:
            ids.append(context.session_id)
        logger.debug("session_saved", session_id=context.session_id,
                     status=context.status.value, node_id=context.current_node_id)

    async def delete(self, session_id: str) -> bool:
        data = self._sessions.pop(session_id, None)
        if data is None:
            return False
        ids = self._contact_index.get(data["contact"]["id"], [])
        if session_id in ids:
            ids.remove(session_id)
        logger.info("session_deleted", session_id=session_id)
        return True

    async def find_latest_for_contact(self, contact_id: str,
                                      flow_id: str = "") -> Optional[SessionContext]:
        candidates = [
            self._sessions[sid] for sid in self._contact_index.get(contact_id, [])
            if sid in self._sessions
            and (not flow_id or self._sessions[sid]["flow_id"] == flow_id)
        ]
        if not candidates:
            return None
        latest = max(candidates, key=_last_activity)
        return _restore(latest)

    async def list_sessions(self, status: Optional[SessionStatus] = None,
                            limit: int = 100) -> list[SessionContext]:
        rows = [
            s for s in self._sessions.values()
            if status is None or s["status"] == status.value
        ]
        rows.sort(key=_last_activity, reverse=True)
        return [_restore(s) for s in rows[:limit]]

    async def count(self) -> int:
        return len(self._sessions)

"""
Abstract Session Store — Interface for all session persistence backends.

Implementations:
  - InMemorySessionStore (dict-based, single-process, no persistence)
  - FileSessionStore     (JSON files on disk, single-process, durable)

Stores hand out copies: mutating a returned SessionContext never changes
what is stored until it is saved again.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import SessionContext, SessionStatus


class BaseSessionStore(ABC):
    """Interface that all session store backends must implement."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionContext]:
        ...

    @abstractmethod
    async def save(self, context: SessionContext) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    async def find_latest_for_contact(self, contact_id: str,
                                      flow_id: str = "") -> Optional[SessionContext]:
        """Most recently active session of a contact, optionally within one flow."""
        ...

    @abstractmethod
    async def list_sessions(self, status: Optional[SessionStatus] = None,
                            limit: int = 100) -> list[SessionContext]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

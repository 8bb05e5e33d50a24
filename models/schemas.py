"""
Core runtime models for the flow execution engine.
These are the session and result types shared by the runner, the node
handlers, the stores and the API.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class SessionStatus(str, Enum):
    ACTIVE = "active"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    HANDOFF = "handoff"
    ERROR = "error"


class TurnState(str, Enum):
    COMPLETED = "completed"
    WAITING_INPUT = "waiting_input"
    HANDOFF = "handoff"
    ERROR = "error"
    TIMEOUT = "timeout"
    STEP_LIMIT = "step_limit"


class HandoffPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# ──────────────────────────────────────────────────────────────
#  Contact — the person on the other side of the conversation
# ──────────────────────────────────────────────────────────────

class ContactInfo(BaseModel):
    id: str
    phone: str = ""
    name: str = ""


# ──────────────────────────────────────────────────────────────
#  Session Context — exclusively owned by one conversation
# ──────────────────────────────────────────────────────────────

class HistoryEntry(BaseModel):
    node_id: str
    node_type: str
    action: str = "executed"                  # executed | waiting | failed | handoff
    timestamp: datetime = Field(default_factory=_utcnow)


class SessionContext(BaseModel):
    """
    Live state of one conversation against one flow.

    Serializable with model_dump_json / model_validate_json so any store
    can persist it between turns.
    """
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    flow_id: str
    flow_version: int = 1
    contact: ContactInfo
    current_node_id: str = ""                 # empty until the first step runs
    status: SessionStatus = SessionStatus.ACTIVE
    variables: dict[str, Any] = {}
    history: list[HistoryEntry] = []
    turn_count: int = 0
    started_at: datetime = Field(default_factory=_utcnow)
    last_activity_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_waiting(self) -> bool:
        return self.status == SessionStatus.WAITING_INPUT

    @property
    def is_finished(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.ERROR)

    def record(self, node_id: str, node_type: str, action: str, limit: int) -> None:
        """Append a history entry, dropping the oldest beyond limit."""
        self.history.append(HistoryEntry(node_id=node_id, node_type=node_type, action=action))
        if limit > 0 and len(self.history) > limit:
            del self.history[: len(self.history) - limit]

    def touch(self) -> None:
        self.last_activity_at = _utcnow()


# ──────────────────────────────────────────────────────────────
#  Step / Turn results
# ──────────────────────────────────────────────────────────────

class HandoffRequest(BaseModel):
    """Signal that a human agent must take over the conversation."""
    target_id: str = ""
    priority: HandoffPriority = HandoffPriority.NORMAL
    reason: str = ""
    metadata: dict[str, Any] = {}


class StepResult(BaseModel):
    """Outcome of executing one node. Variables are a delta, not a snapshot."""
    success: bool = True
    output: Union[str, list[str], None] = None
    next_node_id: Optional[str] = None
    variables: dict[str, Any] = {}
    wait_for_input: bool = False
    terminal: bool = False
    handoff: Optional[HandoffRequest] = None
    error: str = ""
    metadata: dict[str, Any] = {}

    @property
    def outputs(self) -> list[str]:
        if self.output is None:
            return []
        if isinstance(self.output, str):
            return [self.output] if self.output else []
        return [o for o in self.output if o]

    @classmethod
    def failed(cls, error: str, **kwargs) -> "StepResult":
        return cls(success=False, error=error, **kwargs)


class TurnResult(BaseModel):
    """Everything one inbound message produced."""
    session_id: str
    flow_id: str
    state: TurnState
    messages: list[str] = []
    variables: dict[str, Any] = {}
    current_node_id: str = ""
    steps_executed: int = 0
    error: str = ""
    handoff: Optional[HandoffRequest] = None

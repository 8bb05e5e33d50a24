"""
Orchestrator — The central coordinator for inbound conversation turns.

Architecture:
  Inbound:  API → resolve contact session (or pick a flow for a new one)
            → SessionRunner drives the flow graph for one turn
            → hand-off request delivered to the backend as a ticket
            → session persisted → replies returned to the caller

  Hand-off: while a session is in "handoff" a human owns the
            conversation; inbound messages are recorded but the bot stays
            silent until release_session() gives it back.

Turns for the same contact are serialized with a per-contact lock;
different contacts run concurrently. Runners are cached per
(flow id, version) so sessions stay pinned to the version they began on.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import structlog
from typing import Any, Optional

from backend.connector import BackendConnector
from backend.media import MediaProcessor
from backend.webhook import WebhookInvoker
from config.settings import Settings, get_settings
from core.engine import CompletionEngine
from database.store_base import BaseSessionStore
from flows.handlers import NodeHandlers
from flows.models import Flow
from flows.registry import FlowRegistry
from flows.runner import SessionRunner
from models.schemas import (
    ContactInfo, HandoffRequest, SessionContext, SessionStatus, TurnResult, TurnState,
)

logger = structlog.get_logger()


class FlowNotFoundError(LookupError):
    """No registered flow can serve the message."""


class SessionNotFoundError(LookupError):
    """The referenced session does not exist."""


class FlowOrchestrator:
    """
    Generic orchestrator. Business logic lives in the flow graphs, not here.

    This class:
    1. Finds or creates the session for an inbound message
    2. Runs exactly one turn per message through the session's flow version
    3. Delivers hand-off requests to the backend
    4. Persists the session after every turn
    """

    def __init__(
        self,
        registry: FlowRegistry,
        store: BaseSessionStore,
        completion: CompletionEngine = None,
        media: MediaProcessor = None,
        webhooks: WebhookInvoker = None,
        backend: BackendConnector = None,
        settings: Settings = None,
    ):
        self.registry = registry
        self.store = store
        self.completion = completion
        self.media = media
        self.webhooks = webhooks
        self.backend = backend
        self._settings = settings or get_settings()
        self._runners: dict[tuple[str, int], SessionRunner] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _contact_lock(self, contact_id: str):
        """Serialize turns for one contact; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.get(contact_id)
        if lock is None:
            lock = self._locks[contact_id] = asyncio.Lock()
        self._lock_users[contact_id] = self._lock_users.get(contact_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[contact_id] -= 1
            if not self._lock_users[contact_id]:
                del self._lock_users[contact_id]
                del self._locks[contact_id]

    def _runner_for(self, flow_id: str, version: int) -> Optional[SessionRunner]:
        index = self.registry.get_index(flow_id, version)
        if index is None:
            return None
        key = (flow_id, version)
        runner = self._runners.get(key)
        # same-version re-publish swaps the index
        if runner is not None and runner.index is index:
            return runner
        handlers = NodeHandlers(
            index, self._settings.engine,
            completion=self.completion, media=self.media,
            webhooks=self.webhooks, backend=self.backend,
        )
        runner = self._runners[key] = SessionRunner(index, handlers, self._settings.engine)
        return runner

    # ══════════════════════════════════════════════════════════
    #  INBOUND — Message received from a contact
    # ══════════════════════════════════════════════════════════

    async def handle_inbound_message(
        self,
        contact: ContactInfo,
        text: str,
        flow_id: str = None,
        session_id: str = None,
        cancel_event: asyncio.Event = None,
    ) -> TurnResult:
        """
        Main entry point for every inbound message.

        Flow:
        1. Load the addressed session, else the contact's latest open one
        2. Start a new session when none is open (finished ones are not reused)
        3. Skip the bot while a human owns the session
        4. Run one turn and deliver any hand-off request
        5. Persist the session
        """
        logger.info("inbound_message", contact_id=contact.id,
                    flow_id=flow_id, session_id=session_id, content=(text or "")[:100])

        async with self._contact_lock(contact.id):
            context = await self._find_session(contact, text, flow_id, session_id)

            if context.status == SessionStatus.HANDOFF:
                context.variables["last_user_message"] = text
                context.touch()
                await self.store.save(context)
                logger.info("message_during_handoff", session_id=context.session_id)
                return TurnResult(
                    session_id=context.session_id, flow_id=context.flow_id,
                    state=TurnState.HANDOFF, variables=dict(context.variables),
                    current_node_id=context.current_node_id,
                )

            runner = self._runner_for(context.flow_id, context.flow_version)
            if runner is None:
                context.status = SessionStatus.ERROR
                await self.store.save(context)
                raise FlowNotFoundError(
                    f"Flow '{context.flow_id}' v{context.flow_version} is not registered"
                )

            result = await runner.run_turn(context, text, cancel_event=cancel_event)

            if result.handoff is not None:
                ticket = await self._deliver_handoff(context, result.handoff)
                if ticket:
                    context.variables["handoff_ticket_id"] = ticket.get("id", "")
                    result.variables["handoff_ticket_id"] = ticket.get("id", "")

            await self.store.save(context)
            return result

    async def _find_session(self, contact: ContactInfo, text: str,
                            flow_id: Optional[str], session_id: Optional[str]) -> SessionContext:
        if session_id:
            context = await self.store.get(session_id)
            if context is None:
                raise SessionNotFoundError(f"Session '{session_id}' not found")
            return context

        context = await self.store.find_latest_for_contact(contact.id, flow_id or "")
        if context is not None and not context.is_finished:
            return context

        flow = self.registry.resolve_for_message(text, flow_id or "")
        if flow is None:
            raise FlowNotFoundError(
                f"Flow '{flow_id}' not found" if flow_id else "No active flow matches the message"
            )
        return self._new_session(flow, contact)

    def _new_session(self, flow: Flow, contact: ContactInfo) -> SessionContext:
        variables = flow.default_variables()
        variables.update({
            "contact_id": contact.id,
            "contact_name": contact.name,
            "contact_phone": contact.phone,
        })
        context = SessionContext(
            flow_id=flow.id, flow_version=flow.version,
            contact=contact, variables=variables,
        )
        logger.info("session_created", session_id=context.session_id,
                    flow_id=flow.id, version=flow.version, contact_id=contact.id)
        return context

    async def _deliver_handoff(self, context: SessionContext,
                               handoff: HandoffRequest) -> Optional[dict[str, Any]]:
        if self.backend is None:
            logger.warning("handoff_no_backend", session_id=context.session_id)
            return None
        metadata = {
            **handoff.metadata,
            "session_id": context.session_id,
            "flow_id": context.flow_id,
            "contact_id": context.contact.id,
            "contact_phone": context.contact.phone,
        }
        try:
            ticket = await asyncio.wait_for(
                self.backend.create_handoff_ticket(
                    handoff.target_id, handoff.priority.value, handoff.reason, metadata,
                ),
                self._settings.engine.collaborator_timeout_seconds or None,
            )
        except Exception as e:
            logger.error("handoff_ticket_failed", session_id=context.session_id,
                         target_id=handoff.target_id, error=str(e) or type(e).__name__)
            return None
        logger.info("handoff_ticket_created", session_id=context.session_id,
                    target_id=handoff.target_id, priority=handoff.priority.value)
        return ticket if isinstance(ticket, dict) else None

    # ══════════════════════════════════════════════════════════
    #  SESSION MANAGEMENT
    # ══════════════════════════════════════════════════════════

    async def get_session(self, session_id: str) -> Optional[SessionContext]:
        return await self.store.get(session_id)

    async def release_session(self, session_id: str) -> SessionContext:
        """Give a handed-off session back to the bot; the next message restarts the flow."""
        context = await self.store.get(session_id)
        if context is None:
            raise SessionNotFoundError(f"Session '{session_id}' not found")
        async with self._contact_lock(context.contact.id):
            # reload under the lock so messages recorded meanwhile are kept
            context = await self.store.get(session_id)
            if context is None:
                raise SessionNotFoundError(f"Session '{session_id}' not found")
            if context.status == SessionStatus.HANDOFF:
                context.status = SessionStatus.ACTIVE
                context.touch()
                await self.store.save(context)
                logger.info("session_released", session_id=session_id)
        return context

    async def end_session(self, session_id: str) -> bool:
        removed = await self.store.delete(session_id)
        if removed:
            logger.info("session_ended", session_id=session_id)
        return removed

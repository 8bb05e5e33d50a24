"""
Session Runner — drives one conversational turn through a flow graph.

A turn starts at the Start node (new or finished sessions) or resumes at
the node the session is suspended on, handing the user's message to that
node only. It then keeps auto-advancing through non-suspending nodes
until one of:

  - a node asks for input          -> waiting_input
  - a node hands off to a human    -> handoff
  - a terminal node / no successor -> completed
  - a node fails                   -> error (generic apology appended)
  - deadline or cancellation       -> timeout (in-flight step discarded)
  - the step cap is exhausted      -> step_limit

Variable deltas are merged into the session only after the step that
produced them succeeded, in the order the steps ran.

The runner holds no state of its own beyond the shared graph index; the
caller guarantees that one session is never driven by two turns at once.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import suppress
from typing import Optional

from config.settings import EngineConfig
from flows.graph import GraphIndex
from flows.handlers import NodeHandlers
from flows.models import FlowNode
from models.schemas import (
    SessionContext, SessionStatus, StepResult, TurnResult, TurnState,
)

logger = structlog.get_logger()


class TurnAborted(Exception):
    """The turn hit its deadline or was cancelled while a step was running."""


class SessionRunner:

    def __init__(self, index: GraphIndex, handlers: NodeHandlers, config: EngineConfig):
        self.index = index
        self.handlers = handlers
        self.config = config

    # ── Public API ────────────────────────────────────

    async def run_turn(
        self,
        context: SessionContext,
        user_input: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TurnResult:
        """
        Run one turn for a session. The context is updated in place and
        also summarised in the returned TurnResult.
        """
        if user_input is not None:
            user_input = user_input.strip() or None
        if timeout is None:
            timeout = self.config.turn_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout and timeout > 0 else None

        context.turn_count += 1
        context.touch()
        messages: list[str] = []

        if context.flow_id != self.index.flow_id:
            return self._fail(context, messages, 0,
                              f"session belongs to flow '{context.flow_id}', not '{self.index.flow_id}'")

        if user_input is not None:
            context.variables["last_user_message"] = user_input

        node, step_input, error = self._entry_node(context, user_input)
        if node is None:
            return self._fail(context, messages, 0, error)

        logger.info("turn_started", session_id=context.session_id, flow_id=context.flow_id,
                    node_id=node.id, resumed=step_input is not None or context.is_waiting)

        steps = 0
        while steps < self.config.max_steps:
            steps += 1

            if cancel_event is not None and cancel_event.is_set():
                return self._abort(context, node, messages, steps - 1, "turn cancelled")
            try:
                result = await self._run_step(node, context, step_input, deadline, cancel_event)
            except TurnAborted as e:
                return self._abort(context, node, messages, steps, str(e))
            step_input = None

            if not result.success:
                context.record(node.id, node.type, "failed", self.config.history_limit)
                context.current_node_id = node.id
                return self._fail(context, messages, steps,
                                  f"node '{node.id}' ({node.type}) failed: {result.error}")

            self._commit(context, node, result, messages)

            if result.wait_for_input:
                context.status = SessionStatus.WAITING_INPUT
                return self._finish(context, TurnState.WAITING_INPUT, messages, steps)

            if result.handoff is not None:
                context.status = SessionStatus.HANDOFF
                return self._finish(context, TurnState.HANDOFF, messages, steps,
                                    handoff=result.handoff)

            if result.terminal or not result.next_node_id:
                context.status = SessionStatus.COMPLETED
                return self._finish(context, TurnState.COMPLETED, messages, steps)

            next_node = self.index.get_node(result.next_node_id)
            if next_node is None:
                return self._fail(context, messages, steps,
                                  f"node '{node.id}' routes to missing node '{result.next_node_id}'")
            node = next_node

        logger.error("turn_step_limit", session_id=context.session_id,
                     flow_id=context.flow_id, node_id=node.id, max_steps=self.config.max_steps)
        context.status = SessionStatus.ERROR
        messages.append(self.config.error_message)
        return self._finish(
            context, TurnState.STEP_LIMIT, messages, steps,
            error=f"step limit of {self.config.max_steps} reached before node '{node.id}'",
        )

    # ── Internals ─────────────────────────────────────

    def _entry_node(self, context: SessionContext,
                    user_input: Optional[str]) -> tuple[Optional[FlowNode], Optional[str], str]:
        """Where the turn begins, and which input (if any) that node receives."""
        if context.is_waiting and context.current_node_id:
            node = self.index.get_node(context.current_node_id)
            if node is None:
                return None, None, f"suspended node '{context.current_node_id}' not found in flow"
            return node, user_input, ""

        start = self.index.start_node()
        if start is None:
            return None, None, "flow has no start node"
        if context.status != SessionStatus.ACTIVE:
            logger.info("session_restarted", session_id=context.session_id,
                        previous_status=context.status.value)
            context.status = SessionStatus.ACTIVE
        return start, None, ""

    async def _run_step(
        self,
        node: FlowNode,
        context: SessionContext,
        user_input: Optional[str],
        deadline: Optional[float],
        cancel_event: Optional[asyncio.Event],
    ) -> StepResult:
        """Execute one handler, racing it against the deadline and the cancel event."""
        task = asyncio.ensure_future(self.handlers.handle(node, context, user_input))
        waiters: set[asyncio.Future] = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        remaining = None
        if deadline is not None:
            remaining = max(0.0, deadline - asyncio.get_running_loop().time())

        try:
            done, _ = await asyncio.wait(waiters, timeout=remaining,
                                         return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        if cancel_event is not None and cancel_event.is_set():
            raise TurnAborted("turn cancelled")
        raise TurnAborted("turn deadline exceeded")

    def _commit(self, context: SessionContext, node: FlowNode, result: StepResult,
                messages: list[str]) -> None:
        context.variables.update(result.variables)
        messages.extend(result.outputs)
        context.current_node_id = node.id
        action = "waiting" if result.wait_for_input else ("handoff" if result.handoff else "executed")
        context.record(node.id, node.type, action, self.config.history_limit)

    def _abort(self, context: SessionContext, node: FlowNode, messages: list[str],
               steps: int, reason: str) -> TurnResult:
        # next turn retries the interrupted node
        logger.warning("turn_aborted", session_id=context.session_id,
                       node_id=node.id, reason=reason)
        context.current_node_id = node.id
        context.status = SessionStatus.WAITING_INPUT
        context.record(node.id, node.type, "aborted", self.config.history_limit)
        messages.append(self.config.error_message)
        return self._finish(context, TurnState.TIMEOUT, messages, steps, error=reason)

    def _fail(self, context: SessionContext, messages: list[str], steps: int,
              error: str) -> TurnResult:
        logger.error("turn_failed", session_id=context.session_id,
                     flow_id=context.flow_id, error=error)
        context.status = SessionStatus.ERROR
        messages.append(self.config.error_message)
        return self._finish(context, TurnState.ERROR, messages, steps, error=error)

    def _finish(self, context: SessionContext, state: TurnState, messages: list[str],
                steps: int, error: str = "", handoff=None) -> TurnResult:
        context.touch()
        logger.info("turn_finished", session_id=context.session_id, flow_id=context.flow_id,
                    state=state.value, steps=steps, node_id=context.current_node_id)
        return TurnResult(
            session_id=context.session_id,
            flow_id=context.flow_id,
            state=state,
            messages=messages,
            variables=dict(context.variables),
            current_node_id=context.current_node_id,
            steps_executed=steps,
            error=error,
            handoff=handoff,
        )

"""
Node Handlers — one executor per node kind.

Every handler has the same contract:

    handle(node, context, user_input=None) -> StepResult

Handlers read the session context but never mutate it; everything they
want to change is returned as a variable delta which the runner merges
once the step has succeeded. They never raise: configuration problems
and collaborator failures come back as failed StepResults, validation
problems as a re-prompt (wait_for_input) or a routed handle.

Suspending kinds (input, menu, welcome_ai, identify_contract,
lead_capture) are called twice or more: first without input to emit
their prompt, then with the user's answer when the session resumes.
Calling them again without input while suspended re-emits the same
prompt and writes nothing.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from typing import Any, Awaitable, Optional

from backend.connector import BackendConnector
from backend.media import MediaProcessor
from backend.webhook import WebhookInvoker
from config.settings import EngineConfig
from core.engine import CompletionEngine
from flows.graph import GraphIndex
from flows.media import MediaKind, detect_media_type
from flows.models import (
    AIAgentNode, ClientTagNode, ConditionNode, DelayNode, EndNode, FlowNode,
    HandoffNode, IdentifyContractNode, InputNode, LeadCaptureNode, MenuNode,
    MenuOption, MessageNode, StartNode, TagNode, VariableNode, WebhookNode,
    WelcomeAINode,
)
from flows.variables import resolve, resolve_mapping, to_display_text
from models.schemas import HandoffPriority, HandoffRequest, SessionContext, StepResult
from utils.conditions import evaluate_conditions
from utils.validators import validate_input, validate_lead_field

logger = structlog.get_logger()

INVALID_INPUT_MESSAGE = "Entrada inválida. Tente novamente."
INVALID_OPTION_MESSAGE = "Opção inválida. Por favor, selecione uma das opções."


class NodeHandlers:
    """
    Executes single nodes against a session.

    Collaborators are injected so tests can pass fakes and deployments
    can swap providers. Each collaborator call is bounded by
    engine.collaborator_timeout_seconds.
    """

    def __init__(
        self,
        index: GraphIndex,
        config: EngineConfig,
        completion: CompletionEngine = None,
        media: MediaProcessor = None,
        webhooks: WebhookInvoker = None,
        backend: BackendConnector = None,
    ):
        self.index = index
        self.config = config
        self.completion = completion
        self.media = media
        self.webhooks = webhooks
        self.backend = backend

    async def handle(
        self, node: FlowNode, context: SessionContext, user_input: str = None,
    ) -> StepResult:
        """Dispatch to the executor for the node's kind."""
        if user_input is not None:
            user_input = user_input.strip() or None
        try:
            if isinstance(node, StartNode):
                return self._exec_start(node)
            elif isinstance(node, MessageNode):
                return self._exec_message(node, context)
            elif isinstance(node, InputNode):
                return self._exec_input(node, context, user_input)
            elif isinstance(node, MenuNode):
                return self._exec_menu(node, context, user_input)
            elif isinstance(node, ConditionNode):
                return self._exec_condition(node, context)
            elif isinstance(node, AIAgentNode):
                return await self._exec_ai_agent(node, context, user_input)
            elif isinstance(node, WelcomeAINode):
                return await self._exec_welcome_ai(node, context, user_input)
            elif isinstance(node, HandoffNode):
                return self._exec_handoff(node, context)
            elif isinstance(node, WebhookNode):
                return await self._exec_webhook(node, context)
            elif isinstance(node, DelayNode):
                return await self._exec_delay(node)
            elif isinstance(node, TagNode):
                return self._exec_tag(node, context)
            elif isinstance(node, VariableNode):
                return self._exec_variable(node, context)
            elif isinstance(node, IdentifyContractNode):
                return await self._exec_identify_contract(node, context, user_input)
            elif isinstance(node, ClientTagNode):
                return await self._exec_client_tag(node, context)
            elif isinstance(node, LeadCaptureNode):
                return await self._exec_lead_capture(node, context, user_input)
            elif isinstance(node, EndNode):
                return self._exec_end(node, context)
            else:
                return StepResult.failed(f"unknown node kind: {node.type}")
        except Exception as e:
            logger.error("node_execution_error",
                         node_id=node.id, node_type=node.type, error=str(e))
            return StepResult.failed(str(e) or type(e).__name__)

    # ── Helpers ───────────────────────────────────────

    def _next(self, node_id: str, handle: str = None) -> Optional[str]:
        target = self.index.next_node(node_id, handle, strict=self.config.strict_routing)
        return target.id if target else None

    async def _call(self, awaitable: Awaitable) -> Any:
        """Await a collaborator call under the per-call timeout."""
        timeout = self.config.collaborator_timeout_seconds
        if timeout and timeout > 0:
            return await asyncio.wait_for(awaitable, timeout)
        return await awaitable

    @staticmethod
    def _context_block(names: list[str], variables: dict[str, Any]) -> str:
        lines = [f"{n}: {to_display_text(variables[n])}" for n in names if n in variables]
        return "\n\nContexto:\n" + "\n".join(lines) if lines else ""

    # ── START / MESSAGE ───────────────────────────────

    def _exec_start(self, node: StartNode) -> StepResult:
        return StepResult(next_node_id=self._next(node.id))

    def _exec_message(self, node: MessageNode, context: SessionContext) -> StepResult:
        text = resolve(node.data.message, context.variables)
        metadata = {}
        if node.data.media_url:
            metadata = {"media_url": resolve(node.data.media_url, context.variables),
                        "media_type": node.data.media_type}
        return StepResult(output=text, next_node_id=self._next(node.id), metadata=metadata)

    # ── INPUT ─────────────────────────────────────────

    def _exec_input(self, node: InputNode, context: SessionContext,
                    user_input: Optional[str]) -> StepResult:
        data = node.data
        if user_input is None:
            return StepResult(output=resolve(data.question, context.variables),
                              wait_for_input=True)

        if not validate_input(user_input, data.validation_type, data.custom_validation):
            return StepResult(
                output=resolve(data.error_message, context.variables) or INVALID_INPUT_MESSAGE,
                wait_for_input=True,
                metadata={"validation_failed": data.validation_type},
            )

        return StepResult(
            next_node_id=self._next(node.id),
            variables={data.variable_name or "input": user_input},
        )

    # ── MENU ──────────────────────────────────────────

    @staticmethod
    def _render_menu(title: str, options: list[MenuOption]) -> str:
        lines = [title, ""] if title else []
        lines += [f"{i}. {opt.label}" for i, opt in enumerate(options, start=1)]
        return "\n".join(lines)

    @staticmethod
    def _match_option(answer: str, options: list[MenuOption], allow_text: bool) -> Optional[MenuOption]:
        if answer.isdigit():
            choice = int(answer)
            if 1 <= choice <= len(options):
                return options[choice - 1]
        if not allow_text:
            return None
        lowered = answer.lower()
        for opt in options:
            if lowered in opt.label.lower() or (opt.value and opt.value.lower() == lowered):
                return opt
        return None

    def _exec_menu(self, node: MenuNode, context: SessionContext,
                   user_input: Optional[str]) -> StepResult:
        data = node.data
        menu = self._render_menu(resolve(data.menu_title, context.variables), data.options)
        if user_input is None:
            return StepResult(output=menu, wait_for_input=True)

        selected = self._match_option(user_input, data.options, data.allow_text)
        if selected is None:
            invalid = resolve(data.invalid_message, context.variables) or INVALID_OPTION_MESSAGE
            return StepResult(output=[invalid, menu], wait_for_input=True,
                              metadata={"validation_failed": "menu"})

        return StepResult(
            next_node_id=self._next(node.id, selected.id),
            variables={"menu_selection": selected.value or selected.label},
            metadata={"handle": selected.id},
        )

    # ── CONDITION ─────────────────────────────────────

    def _exec_condition(self, node: ConditionNode, context: SessionContext) -> StepResult:
        result = evaluate_conditions(node.data.conditions, context.variables)
        handle = "true" if result else "false"
        return StepResult(
            next_node_id=self._next(node.id, handle),
            variables={"condition_result": result},
            metadata={"handle": handle},
        )

    # ── AI AGENT ──────────────────────────────────────

    async def _exec_ai_agent(self, node: AIAgentNode, context: SessionContext,
                             user_input: Optional[str]) -> StepResult:
        data = node.data
        variables = context.variables
        system_prompt = (resolve(data.system_prompt, variables)
                         + self._context_block(data.context_variables, variables))
        message = user_input or to_display_text(variables.get("last_user_message"))

        reply = ""
        try:
            if self.completion is None:
                raise RuntimeError("no completion service configured")
            reply = await self._call(self.completion.complete(
                system_prompt, message, data.tools,
                model=data.model or None,
                temperature=data.temperature,
                max_tokens=data.max_tokens,
            ))
        except Exception as e:
            logger.warning("ai_agent_no_reply", node_id=node.id, error=str(e))

        output = reply or resolve(data.fallback_message, variables) or None
        return StepResult(
            output=output,
            next_node_id=self._next(node.id),
            variables={"ai_response": reply},
        )

    # ── WELCOME AI ────────────────────────────────────

    async def _normalize_media(self, node: WelcomeAINode, payload: str,
                               kind: MediaKind) -> tuple[str, dict[str, Any]]:
        """Turn a media payload into text; failures keep the raw payload."""
        caps = node.data.capabilities
        if self.media is None:
            return payload, {}
        try:
            if kind == MediaKind.AUDIO and caps.handle_audio:
                text = await self._call(self.media.transcribe(
                    payload, node.data.audio_transcription_provider))
                return text, {"audio_transcription": text}
            if kind == MediaKind.PAYMENT_PROOF and caps.handle_payment_proof:
                fields = await self._call(self.media.extract_fields(
                    payload, node.data.ocr_provider, node.data.payment_proof_fields))
                summary = json.dumps(fields, ensure_ascii=False)
                return f"Comprovante de pagamento recebido: {summary}", dict(fields)
            if kind == MediaKind.IMAGE and caps.handle_images:
                text = await self._call(self.media.describe_image(payload))
                return f"Imagem recebida: {text}", {"image_description": text}
            if kind == MediaKind.DOCUMENT and caps.handle_documents:
                text = await self._call(self.media.read_document(payload))
                return f"Documento recebido: {text}", {"document_content": text}
        except Exception as e:
            logger.warning("media_processing_failed", node_id=node.id,
                           media_type=kind.value, error=str(e))
        return payload, {}

    async def _exec_welcome_ai(self, node: WelcomeAINode, context: SessionContext,
                               user_input: Optional[str]) -> StepResult:
        data = node.data
        variables = context.variables
        if user_input is None:
            return StepResult(output=resolve(data.greeting_message, variables),
                              wait_for_input=True)

        kind = detect_media_type(user_input)
        processed, extracted = await self._normalize_media(node, user_input, kind)
        lowered = processed.lower()

        if data.enable_smart_routing:
            if any(t and t.lower() in lowered for t in data.human_handoff_triggers):
                return StepResult(
                    output=resolve(data.human_handoff_message, variables),
                    variables={
                        **extracted,
                        "handoff_target": data.human_handoff_department,
                        "handoff_reason": "user_request",
                    },
                    handoff=HandoffRequest(
                        target_id=data.human_handoff_department,
                        reason="user_request",
                        metadata={"node_id": node.id, "message": processed},
                    ),
                )

            for sector in data.sector_ais:
                if any(k and k.lower() in lowered for k in sector.keywords):
                    return StepResult(
                        output=f"Entendi! Vou transferir para {sector.name}.",
                        next_node_id=self._next(node.id, "sector_ai"),
                        variables={
                            **extracted,
                            "sector_ai_id": sector.id,
                            "sector_ai_name": sector.name,
                            "original_message": processed,
                        },
                        metadata={"handle": "sector_ai"},
                    )

        reply = ""
        try:
            if self.completion is None:
                raise RuntimeError("no completion service configured")
            system_prompt = (resolve(data.system_prompt, variables)
                             + self._context_block(data.context_variables, variables))
            reply = await self._call(self.completion.complete(
                system_prompt, processed, [],
                model=data.model or None, temperature=data.temperature,
            ))
        except Exception as e:
            logger.warning("welcome_ai_no_reply", node_id=node.id, error=str(e))

        return StepResult(
            output=reply or resolve(data.fallback_message, variables),
            next_node_id=self._next(node.id, "continue"),
            variables={
                **extracted,
                "welcome_ai_response": reply,
                "original_message": processed,
                "media_type": kind.value,
            },
            metadata={"handle": "continue"},
        )

    # ── HANDOFF ───────────────────────────────────────

    def _exec_handoff(self, node: HandoffNode, context: SessionContext) -> StepResult:
        data = node.data
        try:
            priority = HandoffPriority(data.priority)
        except ValueError:
            priority = HandoffPriority.NORMAL
        target = resolve(data.target_id, context.variables)
        return StepResult(
            output=resolve(data.transfer_message, context.variables),
            variables={"handoff_target": target, "handoff_priority": priority.value},
            handoff=HandoffRequest(
                target_id=target,
                priority=priority,
                reason=data.transfer_type,
                metadata={"node_id": node.id, **data.metadata},
            ),
        )

    # ── WEBHOOK ───────────────────────────────────────

    @staticmethod
    def _webhook_body(body: Any, variables: dict[str, Any]) -> Any:
        if body is None or body == "":
            return None
        if isinstance(body, (dict, list)):
            return resolve_mapping(body, variables)
        rendered = resolve(body, variables)
        try:
            return json.loads(rendered)
        except ValueError:
            return rendered

    async def _exec_webhook(self, node: WebhookNode, context: SessionContext) -> StepResult:
        data = node.data
        variables = context.variables
        url = resolve(data.url, variables)
        if self.webhooks is None:
            return StepResult.failed("no webhook invoker configured")

        try:
            response = await self._call(self.webhooks.call(
                url,
                method=data.method,
                body=self._webhook_body(data.body, variables),
                headers={k: resolve(v, variables) for k, v in data.headers.items()},
                timeout=data.timeout,
                retries=data.retry_count,
            ))
        except Exception as e:
            logger.error("webhook_node_failed", node_id=node.id, url=url, error=str(e))
            return StepResult.failed(f"Erro ao chamar webhook: {e}")

        var = data.response_variable or "webhook_response"
        return StepResult(
            next_node_id=self._next(node.id),
            variables={var: response.body, f"{var}_status": response.status_code},
        )

    # ── DELAY ─────────────────────────────────────────

    async def _exec_delay(self, node: DelayNode) -> StepResult:
        seconds = max(0.0, min(float(node.data.delay_seconds), self.config.max_delay_seconds))
        if seconds > 0:
            await asyncio.sleep(seconds)
        return StepResult(
            next_node_id=self._next(node.id),
            metadata={"delay_seconds": seconds, "show_typing": node.data.show_typing},
        )

    # ── TAG ───────────────────────────────────────────

    def _exec_tag(self, node: TagNode, context: SessionContext) -> StepResult:
        name = resolve(node.data.tag_name, context.variables).strip()
        if not name:
            return StepResult.failed("tag node has no tag name")

        key = f"tag_{name}"
        action = node.data.action
        if action == "remove":
            value = False
        elif action == "toggle":
            value = not bool(context.variables.get(key))
        else:
            value = True

        changes = list(context.variables.get("tag_changes") or [])
        changes.append({"tag": name, "action": action, "value": value})
        return StepResult(
            next_node_id=self._next(node.id),
            variables={key: value, "tag_changes": changes},
        )

    # ── VARIABLE ──────────────────────────────────────

    def _exec_variable(self, node: VariableNode, context: SessionContext) -> StepResult:
        data = node.data
        if data.value_type == "from_variable":
            value = context.variables.get(data.source_variable)
            if value is None:
                value = ""
        elif data.value_type == "expression":
            value = resolve(data.value, context.variables)
        else:
            value = data.value
        return StepResult(
            next_node_id=self._next(node.id),
            variables={data.variable_name or "var": value},
        )

    # ── IDENTIFY CONTRACT ─────────────────────────────

    @staticmethod
    def _contract_list(message: str, contracts: list[dict[str, Any]]) -> str:
        lines = [f"{i}. {c.get('address', '')} - {c.get('status', '')}"
                 for i, c in enumerate(contracts, start=1)]
        return f"{message}\n\n" + "\n".join(lines)

    def _contract_found(self, node: IdentifyContractNode, contract: dict[str, Any],
                        count: int) -> StepResult:
        variables = {f"contract_{k}": v for k, v in contract.items()}
        variables.update({
            "contract_id": contract.get("id", ""),
            "contract_address": contract.get("address", ""),
            "contract_status": contract.get("status", ""),
            "contract_locked": node.data.lock_contract,
            "contracts_found": count,
            "pending_contracts": None,
            "identify_contract_node": None,
        })
        return StepResult(
            next_node_id=self._next(node.id, "found"),
            variables=variables,
            metadata={"handle": "found"},
        )

    def _lookup_value(self, node: IdentifyContractNode, context: SessionContext) -> str:
        data = node.data
        variables = context.variables
        if data.variable_name:
            return to_display_text(variables.get(data.variable_name))
        if data.identify_by == "phone" and context.contact.phone:
            return context.contact.phone
        return to_display_text(variables.get(data.identify_by))

    async def _exec_identify_contract(self, node: IdentifyContractNode, context: SessionContext,
                                      user_input: Optional[str]) -> StepResult:
        data = node.data
        variables = context.variables
        selection_message = resolve(data.selection_message, variables)

        pending = variables.get("pending_contracts")
        if pending and variables.get("identify_contract_node") == node.id:
            if user_input is not None and user_input.isdigit():
                choice = int(user_input)
                if 1 <= choice <= len(pending):
                    return self._contract_found(node, pending[choice - 1], len(pending))
            return StepResult(output=self._contract_list(selection_message, pending),
                              wait_for_input=True)

        value = self._lookup_value(node, context)
        contracts: list[dict[str, Any]] = []
        if value:
            if self.backend is None:
                return StepResult.failed("no contract lookup backend configured")
            try:
                contracts = await self._call(self.backend.find_contracts(data.identify_by, value))
            except Exception as e:
                logger.error("contract_lookup_failed", node_id=node.id,
                             identify_by=data.identify_by, error=str(e))
                return StepResult.failed(f"contract lookup failed: {e}")

        if not contracts:
            return StepResult(
                output=resolve(data.not_found_message, variables),
                next_node_id=self._next(node.id, "not_found"),
                variables={"contracts_found": 0},
                metadata={"handle": "not_found"},
            )

        if len(contracts) > 1 and data.ask_for_selection:
            return StepResult(
                output=self._contract_list(selection_message, contracts),
                wait_for_input=True,
                variables={"pending_contracts": contracts, "identify_contract_node": node.id},
            )

        return self._contract_found(node, contracts[0], len(contracts))

    # ── CLIENT TAG ────────────────────────────────────

    async def _client_type_from_contract(self, node: ClientTagNode,
                                         context: SessionContext) -> str:
        variables = context.variables
        recorded = variables.get(f"contract_{node.data.contract_field}")
        if recorded:
            return str(recorded)

        contract_id = variables.get("contract_id")
        if not contract_id or self.backend is None:
            return "novo"
        try:
            found = await self._call(self.backend.get_client_type(str(contract_id)))
        except Exception as e:
            logger.warning("client_type_lookup_failed", node_id=node.id,
                           contract_id=contract_id, error=str(e))
            found = None
        return found or "novo"

    async def _exec_client_tag(self, node: ClientTagNode, context: SessionContext) -> StepResult:
        data = node.data
        if data.auto_detect_from_contract or data.client_tag_type == "from_contract":
            tag = await self._client_type_from_contract(node, context)
        elif data.client_tag_type == "custom":
            tag = resolve(data.custom_tag, context.variables)
        else:
            tag = data.client_tag_type

        current = context.variables.get("client_type")
        if data.action == "remove":
            value = "" if current == tag else current
        else:
            value = tag

        return StepResult(
            next_node_id=self._next(node.id),
            variables={"client_type": value, "client_tag_action": data.action},
        )

    # ── LEAD CAPTURE ──────────────────────────────────

    @staticmethod
    def _lead_reset() -> dict[str, Any]:
        return {"lead_capture_node": None, "lead_capture_index": None, "lead_capture_field": None}

    async def _finish_lead(self, node: LeadCaptureNode, context: SessionContext,
                           captured: dict[str, str]) -> StepResult:
        data = node.data
        variables = context.variables
        try:
            if data.validate_duplicates and captured.get(data.duplicate_field):
                if self.backend is None:
                    raise RuntimeError("no lead backend configured")
                duplicate = await self._call(self.backend.check_duplicate(
                    captured[data.duplicate_field], data.duplicate_field, data.database_table))
                if duplicate:
                    return StepResult(
                        output=resolve(data.duplicate_message, variables),
                        next_node_id=self._next(node.id, "duplicate"),
                        variables={**self._lead_reset(), "lead_data": captured,
                                   "lead_is_duplicate": True},
                        metadata={"handle": "duplicate"},
                    )

            if (data.save_to_database or data.send_to_webhook) and self.backend is None:
                raise RuntimeError("no lead backend configured")
            if data.save_to_database:
                await self._call(self.backend.save_lead(
                    data.database_table, captured, data.lead_source, data.auto_tags))
            if data.send_to_webhook and data.webhook_url:
                await self._call(self.backend.send_lead_webhook(
                    resolve(data.webhook_url, variables), captured,
                    data.lead_source, data.auto_tags))
        except Exception as e:
            logger.error("lead_capture_persist_failed", node_id=node.id, error=str(e))
            return StepResult(
                output=resolve(data.error_message, variables),
                next_node_id=self._next(node.id, "error"),
                variables={**self._lead_reset(), "lead_data": captured,
                           "lead_error": str(e) or type(e).__name__},
                metadata={"handle": "error"},
            )

        logger.info("lead_captured", node_id=node.id, fields=list(captured),
                    saved=data.save_to_database)
        return StepResult(
            output=resolve(data.success_message, variables),
            next_node_id=self._next(node.id, "success"),
            variables={
                **self._lead_reset(),
                "lead_data": captured,
                **{f"lead_{k}": v for k, v in captured.items()},
                "lead_is_duplicate": False,
                "lead_saved": True,
            },
            metadata={"handle": "success"},
        )

    async def _exec_lead_capture(self, node: LeadCaptureNode, context: SessionContext,
                                 user_input: Optional[str]) -> StepResult:
        data = node.data
        variables = context.variables
        fields = data.enabled_fields
        if not fields:
            return StepResult.failed("lead capture has no enabled fields")

        index = variables.get("lead_capture_index")
        in_progress = variables.get("lead_capture_node") == node.id and isinstance(index, int)

        if not in_progress:
            first = fields[0]
            question = resolve(data.question_for(first), variables)
            intro = resolve(data.intro_message, variables)
            return StepResult(
                output=f"{intro}\n\n{question}" if intro else question,
                wait_for_input=True,
                variables={
                    "lead_capture_node": node.id,
                    "lead_capture_index": 0,
                    "lead_capture_data": {},
                    "lead_capture_field": first,
                },
            )

        if index >= len(fields):
            return StepResult.failed("lead capture cursor out of range")
        field = fields[index]
        question = resolve(data.question_for(field), variables)

        if user_input is None:
            return StepResult(output=question, wait_for_input=True)

        if not validate_lead_field(user_input, field):
            return StepResult(output=f"Entrada inválida para {field}. {question}",
                              wait_for_input=True,
                              metadata={"validation_failed": field})

        captured = {**(variables.get("lead_capture_data") or {}), field: user_input}
        if index + 1 < len(fields):
            next_field = fields[index + 1]
            return StepResult(
                output=resolve(data.question_for(next_field), variables),
                wait_for_input=True,
                variables={
                    "lead_capture_index": index + 1,
                    "lead_capture_data": captured,
                    "lead_capture_field": next_field,
                },
            )

        return await self._finish_lead(node, context, captured)

    # ── END ───────────────────────────────────────────

    def _exec_end(self, node: EndNode, context: SessionContext) -> StepResult:
        data = node.data
        return StepResult(
            output=resolve(data.final_message, context.variables) or None,
            terminal=True,
            variables={
                "flow_ended": True,
                "flow_end_type": data.end_type,
                "flow_resolved": data.mark_as_resolved,
            },
        )

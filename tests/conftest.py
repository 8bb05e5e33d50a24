"""Shared test fixtures for the flow engine."""
import pytest
from typing import Any, Optional

from backend.connector import MockBackendConnector
from backend.media import MockMediaProcessor
from backend.webhook import WebhookResponse
from config.settings import EngineConfig, Settings
from flows.graph import GraphIndex
from flows.handlers import NodeHandlers
from flows.registry import FlowRegistry
from flows.runner import SessionRunner
from models.schemas import ContactInfo, SessionContext


# ──────────────────────────────────────────────────────────────
#  Fake collaborators
# ──────────────────────────────────────────────────────────────

class FakeCompletion:
    """Completion engine that returns a canned reply (or fails)."""

    def __init__(self, reply: str = "Resposta da IA", error: Exception = None):
        self.reply = reply
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def complete(self, system_prompt, user_message, tool_names=None,
                       model=None, temperature=None, max_tokens=None):
        self.calls.append({
            "system_prompt": system_prompt, "user_message": user_message,
            "tool_names": tool_names, "model": model,
        })
        if self.error:
            raise self.error
        return self.reply


class FakeWebhooks:
    """Webhook invoker that records calls and returns a fixed response."""

    def __init__(self, status_code: int = 200, body: Any = None, error: Exception = None):
        self.status_code = status_code
        self.body = body if body is not None else {"ok": True}
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def call(self, url, method="GET", body=None, headers=None, timeout=None, retries=None):
        self.calls.append({"url": url, "method": method, "body": body, "headers": headers or {}})
        if self.error:
            raise self.error
        return WebhookResponse(status_code=self.status_code, body=self.body, headers={})


class FailingBackend(MockBackendConnector):
    """Mock backend whose writes always fail."""

    async def save_lead(self, table, fields, source, tags):
        raise RuntimeError("database unavailable")

    async def find_contracts(self, identify_by, value):
        raise RuntimeError("backend unavailable")

    async def create_handoff_ticket(self, target_id, priority, reason, metadata=None):
        raise RuntimeError("ticket service down")


# ──────────────────────────────────────────────────────────────
#  Flow builders
# ──────────────────────────────────────────────────────────────

def build_flow(flow_id: str, nodes: list[tuple], edges: list[tuple], **extra) -> dict[str, Any]:
    """
    Build a designer-style flow dict.

    nodes: (id, type, data) tuples
    edges: (source, target) or (source, target, handle) tuples
    """
    raw_edges = []
    for i, edge in enumerate(edges, start=1):
        item = {"id": f"e{i}", "source": edge[0], "target": edge[1]}
        if len(edge) > 2:
            item["sourceHandle"] = edge[2]
        raw_edges.append(item)
    return {
        "id": flow_id,
        "name": flow_id.replace("_", " ").title(),
        "nodes": [{"id": n[0], "type": n[1], "data": n[2] if len(n) > 2 else {}} for n in nodes],
        "edges": raw_edges,
        **extra,
    }


@pytest.fixture
def age_flow() -> dict:
    """Start → ask age → condition age > 18 → adult / minor message → end."""
    return build_flow(
        "age_check",
        nodes=[
            ("start", "start"),
            ("ask_age", "input", {"question": "Qual sua idade?", "variableName": "age",
                                  "validationType": "number"}),
            ("check", "condition", {"conditions": [
                {"id": "c1", "variable": "age", "operator": "greater_than", "value": "18"},
            ]}),
            ("adult", "message", {"message": "Acesso liberado."}),
            ("minor", "message", {"message": "Acesso negado."}),
            ("end", "end", {"endType": "complete"}),
        ],
        edges=[
            ("start", "ask_age"),
            ("ask_age", "check"),
            ("check", "adult", "true"),
            ("check", "minor", "false"),
            ("adult", "end"),
            ("minor", "end"),
        ],
    )


@pytest.fixture
def menu_flow() -> dict:
    """Start → payment menu → one message per option."""
    return build_flow(
        "payment_menu",
        nodes=[
            ("start", "start"),
            ("menu", "menu", {
                "menuTitle": "Como deseja pagar?",
                "options": [
                    {"id": "opt_pix", "label": "PIX", "value": "pix"},
                    {"id": "opt_boleto", "label": "Boleto", "value": "boleto"},
                ],
                "invalidMessage": "Opção inválida.",
            }),
            ("pix", "message", {"message": "Chave PIX enviada."}),
            ("boleto", "message", {"message": "Boleto gerado para {contact_name}."}),
        ],
        edges=[
            ("start", "menu"),
            ("menu", "pix", "opt_pix"),
            ("menu", "boleto", "opt_boleto"),
        ],
    )


@pytest.fixture
def lead_flow() -> dict:
    """Start → lead capture (nome, cpf) → success / duplicate / error messages."""
    return build_flow(
        "lead",
        nodes=[
            ("start", "start"),
            ("lead", "lead_capture", {
                "captureFields": {
                    "nome": {"enabled": True, "question": "Qual é o seu nome completo?"},
                    "cpf": {"enabled": True, "question": "Qual é o seu CPF?"},
                    "email": {"enabled": False},
                },
                "captureOrder": ["nome", "cpf", "email"],
                "saveToDatabase": True,
                "databaseTable": "leads",
                "validateDuplicates": True,
                "duplicateField": "cpf",
                "introMessage": "Vamos fazer seu cadastro.",
            }),
            ("ok", "message", {"message": "Obrigado, {lead_nome}!"}),
            ("dup", "message", {"message": "Cadastro já existente."}),
            ("err", "message", {"message": "Falha no cadastro."}),
        ],
        edges=[
            ("start", "lead"),
            ("lead", "ok", "success"),
            ("lead", "dup", "duplicate"),
            ("lead", "err", "error"),
        ],
    )


@pytest.fixture
def cycle_flow() -> dict:
    """Two variable nodes pointing at each other, never suspending."""
    return build_flow(
        "cycle",
        nodes=[
            ("start", "start"),
            ("a", "variable", {"variableName": "x", "value": "1"}),
            ("b", "variable", {"variableName": "y", "value": "2"}),
        ],
        edges=[("start", "a"), ("a", "b"), ("b", "a")],
    )


@pytest.fixture
def handoff_flow() -> dict:
    return build_flow(
        "support",
        nodes=[
            ("start", "start"),
            ("hello", "message", {"message": "Olá {contact_name}!"}),
            ("handoff", "handoff", {"targetId": "financeiro", "priority": "high",
                                    "transferMessage": "Aguarde um atendente."}),
        ],
        edges=[("start", "hello"), ("hello", "handoff")],
        isDefault=True,
    )


# ──────────────────────────────────────────────────────────────
#  Engine fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        max_steps=20,
        turn_timeout_seconds=5.0,
        collaborator_timeout_seconds=2.0,
        max_delay_seconds=0.05,
    )


@pytest.fixture
def settings(engine_config) -> Settings:
    return Settings(engine=engine_config)


@pytest.fixture
def contact() -> ContactInfo:
    return ContactInfo(id="c_001", phone="11987654321", name="Ana")


@pytest.fixture
def make_runner(engine_config):
    """Factory: flow dict (+ collaborators) → SessionRunner over a registered flow."""
    def _make(flow: dict, completion=None, media=None, webhooks=None, backend=None,
              config: Optional[EngineConfig] = None) -> SessionRunner:
        cfg = config or engine_config
        registered = FlowRegistry().register(flow)
        index = GraphIndex(registered)
        handlers = NodeHandlers(
            index, cfg,
            completion=completion,
            media=media or MockMediaProcessor(),
            webhooks=webhooks or FakeWebhooks(),
            backend=backend or MockBackendConnector(),
        )
        return SessionRunner(index, handlers, cfg)
    return _make


@pytest.fixture
def make_session(contact):
    """Factory: fresh SessionContext for a flow id."""
    def _make(flow_id: str, variables: dict = None) -> SessionContext:
        return SessionContext(flow_id=flow_id, contact=contact, variables=dict(variables or {}))
    return _make

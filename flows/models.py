"""
Flow Graph Models — the serialized output of the visual flow designer.

A Flow is a directed graph of typed nodes joined by edges. Each node kind
carries its own strongly typed `data` block; the `type` field is the
discriminator of a closed union. Authored JSON uses camelCase keys
(React-Flow shape), snake_case is accepted as well.

Node kinds that are not part of the closed set still parse, as
UnknownNode, so a graph produced by a newer designer never crashes the
loader. Executing one yields a structured error.
"""
from __future__ import annotations

import copy
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag
from pydantic.alias_generators import to_camel


class NodeKind(str, Enum):
    START = "start"
    MESSAGE = "message"
    INPUT = "input"
    MENU = "menu"
    CONDITION = "condition"
    AI_AGENT = "ai_agent"
    WELCOME_AI = "welcome_ai"
    HANDOFF = "handoff"
    WEBHOOK = "webhook"
    DELAY = "delay"
    TAG = "tag"
    VARIABLE = "variable"
    IDENTIFY_CONTRACT = "identify_contract"
    CLIENT_TAG = "client_tag"
    LEAD_CAPTURE = "lead_capture"
    END = "end"


NODE_KINDS = {k.value for k in NodeKind}


class _Authored(BaseModel):
    """Base for every authored block: camelCase in, snake_case attributes."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ──────────────────────────────────────────────────────────────
#  Node data blocks
# ──────────────────────────────────────────────────────────────

class NodeData(_Authored):
    label: str = ""
    description: str = ""


class StartData(NodeData):
    trigger_type: str = "new_conversation"        # new_conversation | keyword | schedule | webhook
    keywords: list[str] = []
    schedule_expression: str = ""


class MessageButton(_Authored):
    id: str
    label: str
    value: str = ""


class MessageData(NodeData):
    message: str = ""
    media_url: str = ""
    media_type: str = ""                          # image | video | audio | document
    buttons: list[MessageButton] = []


class InputData(NodeData):
    question: str = ""
    variable_name: str = "input"
    validation_type: str = "text"                 # text | number | email | cpf | phone | date | custom
    custom_validation: str = ""
    error_message: str = ""
    timeout: Optional[int] = None
    timeout_message: str = ""


class MenuOption(_Authored):
    id: str
    label: str
    value: str = ""
    description: str = ""


class MenuData(NodeData):
    menu_title: str = ""
    options: list[MenuOption] = []
    invalid_message: str = ""
    allow_text: bool = True


class ConditionRule(_Authored):
    id: str = ""
    variable: str
    operator: str
    value: Any = ""
    handle_id: str = ""


class ConditionData(NodeData):
    conditions: list[ConditionRule] = []
    default_handle_id: str = ""


class AIAgentData(NodeData):
    system_prompt: str = ""
    model: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    tools: list[str] = []
    fallback_message: str = ""
    context_variables: list[str] = []


class WelcomeCapabilities(_Authored):
    handle_audio: bool = False
    handle_text: bool = True
    handle_payment_proof: bool = False
    handle_images: bool = False
    handle_documents: bool = False


class SectorAI(_Authored):
    id: str
    name: str
    description: str = ""
    keywords: list[str] = []


class WelcomeAIData(NodeData):
    greeting_message: str = "Olá! Como posso ajudar?"
    model: str = ""
    temperature: Optional[float] = None
    capabilities: WelcomeCapabilities = Field(default_factory=WelcomeCapabilities)
    audio_transcription_provider: str = "whisper"
    audio_response_type: str = "text"
    ocr_provider: str = "google_vision"
    payment_proof_fields: list[str] = ["valor", "data", "banco"]
    enable_smart_routing: bool = False
    sector_ais: list[SectorAI] = Field(default=[], alias="sectorAIs")
    human_handoff_triggers: list[str] = []
    human_handoff_message: str = "Transferindo para um atendente..."
    human_handoff_department: str = ""
    system_prompt: str = ""
    context_variables: list[str] = []
    fallback_message: str = "Entendi sua mensagem! Como posso ajudá-lo hoje?"


class HandoffData(NodeData):
    transfer_type: str = "department"             # department | queue | agent
    target_id: str = ""
    transfer_message: str = "Transferindo para um atendente..."
    priority: str = "normal"                      # low | normal | high | urgent
    metadata: dict[str, str] = {}


class WebhookData(NodeData):
    url: str = ""
    method: str = "GET"
    headers: dict[str, str] = {}
    body: Union[str, dict[str, Any], None] = None
    response_variable: str = "webhook_response"
    timeout: Optional[float] = None               # seconds
    retry_count: Optional[int] = None


class DelayData(NodeData):
    delay_seconds: float = 5
    show_typing: bool = True


class TagData(NodeData):
    tag_name: str = ""
    action: str = "add"                           # add | remove | toggle


class VariableData(NodeData):
    variable_name: str = "var"
    value: str = ""
    value_type: str = "static"                    # static | expression | from_variable
    source_variable: str = ""


class IdentifyContractData(NodeData):
    identify_by: str = "cpf"                      # cpf | phone | email
    lock_contract: bool = False
    ask_for_selection: bool = False
    selection_message: str = "Encontrei mais de um contrato. Digite o número para selecionar:"
    not_found_message: str = "Não encontrei nenhum contrato vinculado a este dado."
    variable_name: str = ""


class ClientTagData(NodeData):
    client_tag_type: str = "novo"
    custom_tag: str = ""
    action: str = "add"                           # add | remove | set
    auto_detect_from_contract: bool = False
    contract_field: str = "tipo_cliente"          # tipo_cliente | perfil | categoria | segmento


class CaptureField(_Authored):
    enabled: bool = False
    required: bool = True
    question: str = ""


class LeadCaptureData(NodeData):
    capture_fields: dict[str, CaptureField] = {}
    capture_order: list[str] = ["nome", "cpf", "email", "celular"]
    save_to_database: bool = False
    database_table: str = "leads"
    send_to_webhook: bool = False
    webhook_url: str = ""
    auto_tags: list[str] = []
    lead_source: str = "whatsapp"
    lead_campaign: str = ""
    intro_message: str = ""
    success_message: str = "Dados registrados com sucesso!"
    error_message: str = "Erro ao salvar dados."
    validate_duplicates: bool = False
    duplicate_field: str = "cpf"
    duplicate_message: str = "Você já está cadastrado!"

    @property
    def enabled_fields(self) -> list[str]:
        return [f for f in self.capture_order
                if f in self.capture_fields and self.capture_fields[f].enabled]

    def question_for(self, field: str) -> str:
        cfg = self.capture_fields.get(field)
        return (cfg.question if cfg else "") or f"Qual é o seu {field}?"


class EndData(NodeData):
    end_type: str = "complete"                    # complete | cancel | error
    final_message: str = ""
    mark_as_resolved: bool = False


# ──────────────────────────────────────────────────────────────
#  Nodes — one variant per kind
# ──────────────────────────────────────────────────────────────

class _Node(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    position: dict[str, float] = {}


class StartNode(_Node):
    type: Literal["start"] = "start"
    data: StartData = Field(default_factory=StartData)


class MessageNode(_Node):
    type: Literal["message"] = "message"
    data: MessageData = Field(default_factory=MessageData)


class InputNode(_Node):
    type: Literal["input"] = "input"
    data: InputData = Field(default_factory=InputData)


class MenuNode(_Node):
    type: Literal["menu"] = "menu"
    data: MenuData = Field(default_factory=MenuData)


class ConditionNode(_Node):
    type: Literal["condition"] = "condition"
    data: ConditionData = Field(default_factory=ConditionData)


class AIAgentNode(_Node):
    type: Literal["ai_agent"] = "ai_agent"
    data: AIAgentData = Field(default_factory=AIAgentData)


class WelcomeAINode(_Node):
    type: Literal["welcome_ai"] = "welcome_ai"
    data: WelcomeAIData = Field(default_factory=WelcomeAIData)


class HandoffNode(_Node):
    type: Literal["handoff"] = "handoff"
    data: HandoffData = Field(default_factory=HandoffData)


class WebhookNode(_Node):
    type: Literal["webhook"] = "webhook"
    data: WebhookData = Field(default_factory=WebhookData)


class DelayNode(_Node):
    type: Literal["delay"] = "delay"
    data: DelayData = Field(default_factory=DelayData)


class TagNode(_Node):
    type: Literal["tag"] = "tag"
    data: TagData = Field(default_factory=TagData)


class VariableNode(_Node):
    type: Literal["variable"] = "variable"
    data: VariableData = Field(default_factory=VariableData)


class IdentifyContractNode(_Node):
    type: Literal["identify_contract"] = "identify_contract"
    data: IdentifyContractData = Field(default_factory=IdentifyContractData)


class ClientTagNode(_Node):
    type: Literal["client_tag"] = "client_tag"
    data: ClientTagData = Field(default_factory=ClientTagData)


class LeadCaptureNode(_Node):
    type: Literal["lead_capture"] = "lead_capture"
    data: LeadCaptureData = Field(default_factory=LeadCaptureData)


class EndNode(_Node):
    type: Literal["end"] = "end"
    data: EndData = Field(default_factory=EndData)


class UnknownNode(_Node):
    """A node kind this engine does not implement."""
    type: str
    data: dict[str, Any] = {}


def _node_kind(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if isinstance(kind, Enum):
        kind = kind.value
    return kind if kind in NODE_KINDS else "unknown"


FlowNode = Annotated[
    Union[
        Annotated[StartNode, Tag("start")],
        Annotated[MessageNode, Tag("message")],
        Annotated[InputNode, Tag("input")],
        Annotated[MenuNode, Tag("menu")],
        Annotated[ConditionNode, Tag("condition")],
        Annotated[AIAgentNode, Tag("ai_agent")],
        Annotated[WelcomeAINode, Tag("welcome_ai")],
        Annotated[HandoffNode, Tag("handoff")],
        Annotated[WebhookNode, Tag("webhook")],
        Annotated[DelayNode, Tag("delay")],
        Annotated[TagNode, Tag("tag")],
        Annotated[VariableNode, Tag("variable")],
        Annotated[IdentifyContractNode, Tag("identify_contract")],
        Annotated[ClientTagNode, Tag("client_tag")],
        Annotated[LeadCaptureNode, Tag("lead_capture")],
        Annotated[EndNode, Tag("end")],
        Annotated[UnknownNode, Tag("unknown")],
    ],
    Discriminator(_node_kind),
]


# ──────────────────────────────────────────────────────────────
#  Edges & Flow
# ──────────────────────────────────────────────────────────────

class Edge(_Authored):
    id: str = ""
    source: str
    target: str
    source_handle: Optional[str] = None
    label: str = ""


class FlowVariable(_Authored):
    name: str
    type: str = "string"                          # string | number | boolean | object | array
    default_value: Any = None
    description: str = ""


class Flow(_Authored):
    """
    A complete conversation flow as saved by the designer.

    `version` is bumped on every publish; the registry caches the graph
    index per (id, version) so running sessions keep a stable view.
    """
    id: str
    name: str = ""
    description: str = ""
    department_id: str = ""
    is_active: bool = True
    is_default: bool = False
    trigger_type: str = "new_conversation"
    nodes: list[FlowNode] = []
    edges: list[Edge] = []
    variables: list[FlowVariable] = []
    version: int = 1

    def default_variables(self) -> dict[str, Any]:
        return {v.name: copy.deepcopy(v.default_value) for v in self.variables
                if v.default_value is not None}

    def start_keywords(self) -> list[str]:
        return [
            kw
            for node in self.nodes
            if isinstance(node, StartNode) and node.data.trigger_type == "keyword"
            for kw in node.data.keywords
        ]

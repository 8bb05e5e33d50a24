"""
Tests for the per-kind node handlers.

Each test drives a single node through NodeHandlers.handle() and checks
the StepResult: outputs, routing, variable delta and suspension flag.
"""
import pytest

from backend.connector import MockBackendConnector
from backend.media import MockMediaProcessor
from backend.webhook import WebhookError
from conftest import FailingBackend, FakeCompletion, FakeWebhooks, build_flow
from core.engine import CompletionError
from models.schemas import HandoffPriority


def single_node_flow(node_type: str, data: dict, handles: list[str] = None) -> dict:
    """Start → node under test → one target per handle (or a single 'next')."""
    nodes = [("start", "start"), ("n", node_type, data)]
    edges = [("start", "n")]
    for handle in handles or [None]:
        target = f"to_{handle}" if handle else "next"
        nodes.append((target, "message", {"message": target}))
        edges.append(("n", target, handle) if handle else ("n", target))
    return build_flow("unit", nodes, edges)


@pytest.fixture
def run_node(make_runner, make_session):
    """Factory: execute node 'n' of a one-node flow and return (result, context)."""
    async def _run(node_type, data, user_input=None, variables=None, handles=None, **collab):
        runner = make_runner(single_node_flow(node_type, data, handles), **collab)
        context = make_session("unit", variables)
        node = runner.index.get_node("n")
        result = await runner.handlers.handle(node, context, user_input)
        return result, context
    return _run


class TestMessageAndInput:
    @pytest.mark.asyncio
    async def test_message_substitutes_and_routes(self, run_node):
        result, _ = await run_node("message", {"message": "Olá {nome}, valor {valor}",
                                               "mediaUrl": "https://cdn/{nome}.png",
                                               "mediaType": "image"},
                                   variables={"nome": "Ana"})
        assert result.success
        assert result.outputs == ["Olá Ana, valor {valor}"]
        assert result.next_node_id == "next"
        assert result.metadata["media_url"] == "https://cdn/Ana.png"

    @pytest.mark.asyncio
    async def test_input_asks_and_waits(self, run_node):
        result, _ = await run_node("input", {"question": "Seu email?", "variableName": "email",
                                             "validationType": "email"})
        assert result.wait_for_input
        assert result.outputs == ["Seu email?"]
        assert result.variables == {}

    @pytest.mark.asyncio
    async def test_input_invalid_reprompts(self, run_node):
        result, _ = await run_node("input", {"variableName": "email", "validationType": "email",
                                             "errorMessage": "Email inválido."},
                                   user_input="nao-sou-email")
        assert result.wait_for_input
        assert result.outputs == ["Email inválido."]
        assert "email" not in result.variables

    @pytest.mark.asyncio
    async def test_input_default_error_message(self, run_node):
        result, _ = await run_node("input", {"validationType": "number"}, user_input="abc")
        assert result.outputs == ["Entrada inválida. Tente novamente."]

    @pytest.mark.asyncio
    async def test_input_valid_stores_and_routes(self, run_node):
        result, _ = await run_node("input", {"variableName": "email", "validationType": "email"},
                                   user_input="  ana@example.com ")
        assert not result.wait_for_input
        assert result.variables == {"email": "ana@example.com"}
        assert result.next_node_id == "next"


class TestMenu:
    DATA = {
        "menuTitle": "Escolha:",
        "options": [
            {"id": "o1", "label": "PIX", "value": "pix"},
            {"id": "o2", "label": "Boleto bancário", "value": "boleto"},
        ],
    }

    @pytest.mark.asyncio
    async def test_renders_menu(self, run_node):
        result, _ = await run_node("menu", self.DATA, handles=["o1", "o2"])
        assert result.wait_for_input
        assert result.outputs == ["Escolha:\n\n1. PIX\n2. Boleto bancário"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer", ["2", "boleto", "Boleto"])
    async def test_selection_routes_by_option(self, run_node, answer):
        result, _ = await run_node("menu", self.DATA, user_input=answer, handles=["o1", "o2"])
        assert result.next_node_id == "to_o2"
        assert result.variables == {"menu_selection": "boleto"}

    @pytest.mark.asyncio
    async def test_invalid_answer_reprompts(self, run_node):
        result, _ = await run_node("menu", self.DATA, user_input="cash", handles=["o1", "o2"])
        assert result.wait_for_input
        assert result.outputs[0] == "Opção inválida. Por favor, selecione uma das opções."
        assert result.outputs[1].startswith("Escolha:")
        assert result.variables == {}

    @pytest.mark.asyncio
    async def test_out_of_range_number(self, run_node):
        result, _ = await run_node("menu", self.DATA, user_input="7", handles=["o1", "o2"])
        assert result.wait_for_input

    @pytest.mark.asyncio
    async def test_text_disabled(self, run_node):
        data = {**self.DATA, "allowText": False}
        result, _ = await run_node("menu", data, user_input="boleto", handles=["o1", "o2"])
        assert result.wait_for_input


class TestCondition:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("age,target", [("17", "to_false"), ("25", "to_true")])
    async def test_routes_true_false(self, run_node, age, target):
        data = {"conditions": [{"variable": "age", "operator": "greater_than", "value": "18"}]}
        result, _ = await run_node("condition", data, variables={"age": age},
                                   handles=["true", "false"])
        assert result.next_node_id == target
        assert result.variables == {"condition_result": target == "to_true"}


class TestAIAgent:
    @pytest.mark.asyncio
    async def test_reply_and_prompt(self, run_node):
        completion = FakeCompletion(reply="Seu boleto vence dia 10.")
        data = {"systemPrompt": "Você atende {empresa}.", "contextVariables": ["contract_id"],
                "tools": ["consultar_boleto"], "model": "claude-3-haiku"}
        result, _ = await run_node("ai_agent", data, user_input="quando vence?",
                                   variables={"empresa": "XYZ", "contract_id": "contract-123"},
                                   completion=completion)
        assert result.outputs == ["Seu boleto vence dia 10."]
        assert result.variables == {"ai_response": "Seu boleto vence dia 10."}
        call = completion.calls[0]
        assert call["system_prompt"].startswith("Você atende XYZ.")
        assert "contract_id: contract-123" in call["system_prompt"]
        assert call["tool_names"] == ["consultar_boleto"]
        assert call["user_message"] == "quando vence?"

    @pytest.mark.asyncio
    async def test_uses_last_user_message(self, run_node):
        completion = FakeCompletion()
        await run_node("ai_agent", {}, variables={"last_user_message": "oi"}, completion=completion)
        assert completion.calls[0]["user_message"] == "oi"

    @pytest.mark.asyncio
    async def test_failure_uses_fallback(self, run_node):
        completion = FakeCompletion(error=CompletionError("rate limited"))
        result, _ = await run_node("ai_agent", {"fallbackMessage": "Não entendi."},
                                   user_input="oi", completion=completion)
        assert result.success
        assert result.outputs == ["Não entendi."]
        assert result.variables == {"ai_response": ""}
        assert result.next_node_id == "next"


class TestWelcomeAI:
    @pytest.mark.asyncio
    async def test_greets_and_waits(self, run_node):
        result, _ = await run_node("welcome_ai", {"greetingMessage": "Oi {contact_name}!"},
                                   variables={"contact_name": "Ana"})
        assert result.wait_for_input
        assert result.outputs == ["Oi Ana!"]

    @pytest.mark.asyncio
    async def test_handoff_trigger(self, run_node):
        data = {"enableSmartRouting": True, "humanHandoffTriggers": ["atendente"],
                "humanHandoffDepartment": "suporte"}
        result, _ = await run_node("welcome_ai", data, user_input="quero um ATENDENTE",
                                   handles=["continue"], completion=FakeCompletion())
        assert result.handoff is not None
        assert result.handoff.target_id == "suporte"
        assert result.handoff.reason == "user_request"
        assert result.next_node_id is None
        assert result.outputs == ["Transferindo para um atendente..."]

    @pytest.mark.asyncio
    async def test_sector_routing(self, run_node):
        data = {"enableSmartRouting": True,
                "sectorAIs": [{"id": "fin", "name": "Financeiro", "keywords": ["boleto"]}]}
        result, _ = await run_node("welcome_ai", data, user_input="meu boleto atrasou",
                                   handles=["continue", "sector_ai"], completion=FakeCompletion())
        assert result.next_node_id == "to_sector_ai"
        assert result.outputs == ["Entendi! Vou transferir para Financeiro."]
        assert result.variables["sector_ai_id"] == "fin"

    @pytest.mark.asyncio
    async def test_audio_transcribed_then_answered(self, run_node):
        completion = FakeCompletion(reply="Posso ajudar com o boleto.")
        data = {"capabilities": {"handleAudio": True}}
        result, _ = await run_node("welcome_ai", data, user_input="[AUDIO] https://cdn/a.ogg",
                                   handles=["continue"], completion=completion,
                                   media=MockMediaProcessor(transcription="segunda via"))
        assert completion.calls[0]["user_message"] == "segunda via"
        assert result.variables["audio_transcription"] == "segunda via"
        assert result.variables["media_type"] == "audio"
        assert result.next_node_id == "to_continue"

    @pytest.mark.asyncio
    async def test_payment_proof_fields_extracted(self, run_node):
        data = {"capabilities": {"handlePaymentProof": True}, "paymentProofFields": ["valor"]}
        result, _ = await run_node("welcome_ai", data, user_input="[COMPROVANTE] img",
                                   handles=["continue"], completion=FakeCompletion())
        assert result.variables["valor"] == "R$ 1.500,00"
        assert result.variables["original_message"].startswith("Comprovante de pagamento recebido")

    @pytest.mark.asyncio
    async def test_completion_failure_falls_back(self, run_node):
        result, _ = await run_node("welcome_ai", {}, user_input="oi", handles=["continue"],
                                   completion=FakeCompletion(error=CompletionError("down")))
        assert result.outputs == ["Entendi sua mensagem! Como posso ajudá-lo hoje?"]
        assert result.variables["welcome_ai_response"] == ""


class TestHandoff:
    @pytest.mark.asyncio
    async def test_handoff_request(self, run_node):
        data = {"transferType": "queue", "targetId": "{setor}", "priority": "urgent",
                "transferMessage": "Um momento."}
        result, _ = await run_node("handoff", data, variables={"setor": "cobranca"})
        assert result.outputs == ["Um momento."]
        assert result.handoff.target_id == "cobranca"
        assert result.handoff.priority == HandoffPriority.URGENT
        assert result.handoff.reason == "queue"
        assert result.variables == {"handoff_target": "cobranca", "handoff_priority": "urgent"}

    @pytest.mark.asyncio
    async def test_unknown_priority_is_normal(self, run_node):
        result, _ = await run_node("handoff", {"priority": "asap"})
        assert result.handoff.priority == HandoffPriority.NORMAL


class TestWebhook:
    @pytest.mark.asyncio
    async def test_call_and_store_response(self, run_node):
        webhooks = FakeWebhooks(status_code=201, body={"protocolo": "P-1"})
        data = {"url": "https://api.example.com/{contract_id}", "method": "POST",
                "body": '{"cliente": "{nome}"}', "headers": {"X-Id": "{contract_id}"},
                "responseVariable": "resposta"}
        result, _ = await run_node("webhook", data, webhooks=webhooks,
                                   variables={"contract_id": "c1", "nome": "Ana"})
        call = webhooks.calls[0]
        assert call["url"] == "https://api.example.com/c1"
        assert call["body"] == {"cliente": "Ana"}
        assert call["headers"] == {"X-Id": "c1"}
        assert result.variables == {"resposta": {"protocolo": "P-1"}, "resposta_status": 201}
        assert result.next_node_id == "next"

    @pytest.mark.asyncio
    async def test_failure_is_step_error(self, run_node):
        webhooks = FakeWebhooks(error=WebhookError("connection refused"))
        result, _ = await run_node("webhook", {"url": "https://x"}, webhooks=webhooks)
        assert not result.success
        assert result.error.startswith("Erro ao chamar webhook")


class TestDelayTagVariable:
    @pytest.mark.asyncio
    async def test_delay_is_clamped(self, run_node):
        result, _ = await run_node("delay", {"delaySeconds": 3600})
        assert result.metadata["delay_seconds"] == pytest.approx(0.05)
        assert result.next_node_id == "next"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action,before,after", [
        ("add", None, True), ("remove", True, False),
        ("toggle", True, False), ("toggle", None, True),
    ])
    async def test_tag_actions(self, run_node, action, before, after):
        variables = {} if before is None else {"tag_vip": before}
        result, _ = await run_node("tag", {"tagName": "vip", "action": action}, variables=variables)
        assert result.variables["tag_vip"] is after
        assert result.variables["tag_changes"][-1] == {"tag": "vip", "action": action, "value": after}

    @pytest.mark.asyncio
    async def test_tag_without_name_fails(self, run_node):
        result, _ = await run_node("tag", {"tagName": "  "})
        assert not result.success

    @pytest.mark.asyncio
    async def test_variable_static_keeps_literal(self, run_node):
        result, _ = await run_node("variable", {"variableName": "v", "value": "{nome}"},
                                   variables={"nome": "Ana"})
        assert result.variables == {"v": "{nome}"}

    @pytest.mark.asyncio
    async def test_variable_expression(self, run_node):
        result, _ = await run_node("variable", {"variableName": "v", "value": "Sr(a). {nome}",
                                                "valueType": "expression"},
                                   variables={"nome": "Ana"})
        assert result.variables == {"v": "Sr(a). Ana"}

    @pytest.mark.asyncio
    async def test_variable_from_variable(self, run_node):
        result, _ = await run_node("variable", {"variableName": "copia", "valueType": "from_variable",
                                                "sourceVariable": "dados"},
                                   variables={"dados": {"a": 1}})
        assert result.variables == {"copia": {"a": 1}}
        result, _ = await run_node("variable", {"variableName": "copia", "valueType": "from_variable",
                                                "sourceVariable": "ausente"})
        assert result.variables == {"copia": ""}


class TestIdentifyContract:
    HANDLES = ["found", "not_found"]

    @pytest.mark.asyncio
    async def test_single_contract_found(self, run_node):
        result, _ = await run_node("identify_contract", {"identifyBy": "cpf", "lockContract": True},
                                   variables={"cpf": "123.456.789-09"}, handles=self.HANDLES)
        assert result.next_node_id == "to_found"
        assert result.variables["contract_id"] == "contract-123"
        assert result.variables["contract_tipo_cliente"] == "inquilino"
        assert result.variables["contract_locked"] is True
        assert result.variables["contracts_found"] == 1

    @pytest.mark.asyncio
    async def test_phone_from_contact(self, run_node):
        # the session contact's phone is 11987654321
        result, _ = await run_node("identify_contract", {"identifyBy": "phone"}, handles=self.HANDLES)
        assert result.variables["contract_id"] == "contract-123"

    @pytest.mark.asyncio
    async def test_not_found(self, run_node):
        result, _ = await run_node("identify_contract", {"identifyBy": "cpf"},
                                   variables={"cpf": "00000000000"}, handles=self.HANDLES)
        assert result.next_node_id == "to_not_found"
        assert result.outputs == ["Não encontrei nenhum contrato vinculado a este dado."]
        assert result.variables == {"contracts_found": 0}

    @pytest.mark.asyncio
    async def test_multiple_contracts_ask_for_selection(self, run_node, make_runner, make_session):
        data = {"identifyBy": "cpf", "askForSelection": True}
        runner = make_runner(single_node_flow("identify_contract", data, self.HANDLES))
        context = make_session("unit", {"cpf": "98765432100"})
        node = runner.index.get_node("n")

        first = await runner.handlers.handle(node, context, None)
        assert first.wait_for_input
        assert "1. Av. Paulista, 1000 - Sala 12 - Ativo" in first.outputs[0]
        context.variables.update(first.variables)

        again = await runner.handlers.handle(node, context, "nenhum")
        assert again.wait_for_input

        picked = await runner.handlers.handle(node, context, "2")
        assert picked.next_node_id == "to_found"
        assert picked.variables["contract_id"] == "contract-789"
        assert picked.variables["pending_contracts"] is None

    @pytest.mark.asyncio
    async def test_backend_failure_fails_step(self, run_node):
        result, _ = await run_node("identify_contract", {"identifyBy": "cpf"},
                                   variables={"cpf": "12345678909"}, backend=FailingBackend())
        assert not result.success
        assert "backend unavailable" in result.error


class TestClientTag:
    @pytest.mark.asyncio
    async def test_auto_detect_from_contract_variable(self, run_node):
        result, _ = await run_node("client_tag", {"autoDetectFromContract": True},
                                   variables={"contract_tipo_cliente": "proprietario"})
        assert result.variables == {"client_type": "proprietario", "client_tag_action": "add"}

    @pytest.mark.asyncio
    async def test_auto_detect_via_backend(self, run_node):
        result, _ = await run_node("client_tag", {"autoDetectFromContract": True},
                                   variables={"contract_id": "contract-456"})
        assert result.variables["client_type"] == "proprietario"

    @pytest.mark.asyncio
    async def test_auto_detect_defaults_to_novo(self, run_node):
        result, _ = await run_node("client_tag", {"autoDetectFromContract": True})
        assert result.variables["client_type"] == "novo"

    @pytest.mark.asyncio
    async def test_custom_tag(self, run_node):
        result, _ = await run_node("client_tag", {"clientTagType": "custom", "customTag": "vip"})
        assert result.variables["client_type"] == "vip"

    @pytest.mark.asyncio
    async def test_remove_only_matching(self, run_node):
        result, _ = await run_node("client_tag", {"clientTagType": "inquilino", "action": "remove"},
                                   variables={"client_type": "inquilino"})
        assert result.variables["client_type"] == ""
        result, _ = await run_node("client_tag", {"clientTagType": "inquilino", "action": "remove"},
                                   variables={"client_type": "proprietario"})
        assert result.variables["client_type"] == "proprietario"


class TestEndAndUnknown:
    @pytest.mark.asyncio
    async def test_end_is_terminal(self, run_node):
        result, _ = await run_node("end", {"endType": "cancel", "finalMessage": "Até logo, {nome}.",
                                           "markAsResolved": True},
                                   variables={"nome": "Ana"})
        assert result.terminal
        assert result.outputs == ["Até logo, Ana."]
        assert result.variables == {"flow_ended": True, "flow_end_type": "cancel",
                                    "flow_resolved": True}

    @pytest.mark.asyncio
    async def test_unknown_kind_fails(self, run_node):
        result, _ = await run_node("carousel", {})
        assert not result.success
        assert result.error == "unknown node kind: carousel"

    @pytest.mark.asyncio
    async def test_strict_routing_miss_is_step_error(self, make_runner, make_session, engine_config):
        engine_config.strict_routing = True
        flow = single_node_flow("condition", {"conditions": []}, handles=["false"])
        runner = make_runner(flow, config=engine_config)
        result = await runner.handlers.handle(runner.index.get_node("n"), make_session("unit"))
        assert not result.success
        assert "handle 'true'" in result.error

"""
Backend Connector — Adapter for the contract/CRM/ticketing backend.

Flow nodes never talk to the backend directly; they go through this
interface so the engine can run against the real REST API, or against
the mock during development and tests.

Operations:
  - find_contracts         (identify_contract nodes)
  - get_client_type        (client_tag nodes without a contract variable)
  - check_duplicate / save_lead / send_lead_webhook   (lead_capture nodes)
  - create_handoff_ticket  (orchestrator, when a session yields to a human)

Failures raise CollaboratorError; handlers turn them into routed
outcomes or fallback messages.
"""
from __future__ import annotations

import abc
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import BackendConfig, get_settings
from utils.validators import normalize_lookup_value

logger = structlog.get_logger()


class CollaboratorError(Exception):
    """An external collaborator failed or returned an unusable answer."""


class BackendConnector(abc.ABC):
    """Abstract base for all backend connectors."""

    @abc.abstractmethod
    async def find_contracts(self, identify_by: str, value: str) -> list[dict[str, Any]]:
        """Contracts linked to a CPF / phone / email. Each has id, address, status."""
        ...

    @abc.abstractmethod
    async def get_client_type(self, contract_id: str) -> Optional[str]:
        """Client classification recorded on a contract (proprietario, inquilino, ...)."""
        ...

    @abc.abstractmethod
    async def check_duplicate(self, value: str, field: str, table: str) -> bool:
        ...

    @abc.abstractmethod
    async def save_lead(self, table: str, fields: dict[str, Any], source: str,
                        tags: list[str]) -> None:
        ...

    @abc.abstractmethod
    async def send_lead_webhook(self, url: str, fields: dict[str, Any], source: str,
                                tags: list[str]) -> None:
        ...

    @abc.abstractmethod
    async def create_handoff_ticket(self, target_id: str, priority: str, reason: str,
                                    metadata: dict[str, Any] = None) -> dict[str, Any]:
        """Hand a conversation to a human queue. Returns the ticket record."""
        ...

    async def close(self):
        pass


class RESTBackendConnector(BackendConnector):
    """
    REST API backend connector.
    Endpoint paths come from settings (backend.endpoints) and may contain
    {placeholders} filled from path_params.
    """

    def __init__(self, config: BackendConfig = None):
        self.config = config or get_settings().backend
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        # Replace path parameters
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def _call(self, method: str, endpoint: str, **kwargs) -> Any:
        try:
            return await self._request(method, endpoint, **kwargs)
        except Exception as e:
            logger.error("backend_request_failed", endpoint=endpoint, error=str(e))
            raise CollaboratorError(f"{endpoint} failed: {e}") from e

    @staticmethod
    def _unwrap_list(result: Any) -> list[dict[str, Any]]:
        if isinstance(result, list):
            return result
        return result.get("data", result.get("results", []))

    async def find_contracts(self, identify_by: str, value: str) -> list[dict[str, Any]]:
        result = await self._call(
            "GET", "find_contracts",
            params={"by": identify_by, "value": normalize_lookup_value(identify_by, value)},
        )
        return self._unwrap_list(result)

    async def get_client_type(self, contract_id: str) -> Optional[str]:
        result = await self._call(
            "GET", "get_client_type",
            path_params={"contract_id": contract_id},
        )
        if isinstance(result, dict):
            return result.get("client_type") or result.get("tipo_cliente")
        return str(result) if result else None

    async def check_duplicate(self, value: str, field: str, table: str) -> bool:
        result = await self._call(
            "GET", "check_duplicate",
            path_params={"table": table},
            params={"field": field, "value": value},
        )
        if isinstance(result, dict):
            return bool(result.get("exists", result.get("duplicate", False)))
        return bool(result)

    async def save_lead(self, table: str, fields: dict[str, Any], source: str,
                        tags: list[str]) -> None:
        await self._call(
            "POST", "save_lead",
            path_params={"table": table},
            json={**fields, "source": source, "tags": tags,
                  "created_at": datetime.now(timezone.utc).isoformat()},
        )

    async def send_lead_webhook(self, url: str, fields: dict[str, Any], source: str,
                                tags: list[str]) -> None:
        # absolute URL: httpx ignores base_url for it
        await self._call(
            "POST", url,
            json={**fields, "source": source, "tags": tags,
                  "created_at": datetime.now(timezone.utc).isoformat()},
        )

    async def create_handoff_ticket(self, target_id: str, priority: str, reason: str,
                                    metadata: dict[str, Any] = None) -> dict[str, Any]:
        return await self._call(
            "POST", "create_handoff_ticket",
            json={"target_id": target_id, "priority": priority,
                  "reason": reason, "metadata": metadata or {}},
        )

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockBackendConnector(BackendConnector):
    """
    Mock backend for development and testing.
    Returns sample data mimicking a property rental back office.
    """

    def __init__(self, contracts: list[dict[str, Any]] = None):
        self._contracts = contracts if contracts is not None else [
            {
                "id": "contract-123", "address": "Rua das Flores, 123 - Apto 45",
                "status": "Ativo", "cpf": "12345678909", "phone": "11987654321",
                "email": "ana.silva@example.com", "tipo_cliente": "inquilino",
            },
            {
                "id": "contract-456", "address": "Av. Paulista, 1000 - Sala 12",
                "status": "Ativo", "cpf": "98765432100", "phone": "11912345678",
                "email": "carlos@example.com", "tipo_cliente": "proprietario",
            },
            {
                "id": "contract-789", "address": "Rua Augusta, 500",
                "status": "Encerrado", "cpf": "98765432100", "phone": "11912345678",
                "email": "carlos@example.com", "tipo_cliente": "proprietario",
            },
        ]
        self.leads: dict[str, list[dict[str, Any]]] = {}
        self.webhook_leads: list[dict[str, Any]] = []
        self.tickets: list[dict[str, Any]] = []

    async def find_contracts(self, identify_by: str, value: str) -> list[dict[str, Any]]:
        wanted = normalize_lookup_value(identify_by, value)
        return [
            {k: v for k, v in c.items() if k not in ("cpf", "phone", "email")}
            for c in self._contracts
            if wanted and normalize_lookup_value(identify_by, str(c.get(identify_by, ""))) == wanted
        ]

    async def get_client_type(self, contract_id: str) -> Optional[str]:
        for c in self._contracts:
            if c["id"] == contract_id:
                return c.get("tipo_cliente")
        return None

    async def check_duplicate(self, value: str, field: str, table: str) -> bool:
        return any(lead.get(field) == value for lead in self.leads.get(table, []))

    async def save_lead(self, table: str, fields: dict[str, Any], source: str,
                        tags: list[str]) -> None:
        self.leads.setdefault(table, []).append({**fields, "source": source, "tags": list(tags)})
        logger.info("mock_backend_lead_saved", table=table, fields=list(fields))

    async def send_lead_webhook(self, url: str, fields: dict[str, Any], source: str,
                                tags: list[str]) -> None:
        self.webhook_leads.append({"url": url, **fields, "source": source, "tags": list(tags)})
        logger.info("mock_backend_lead_webhook", url=url)

    async def create_handoff_ticket(self, target_id: str, priority: str, reason: str,
                                    metadata: dict[str, Any] = None) -> dict[str, Any]:
        ticket = {
            "id": f"T{len(self.tickets) + 1:04d}", "target_id": target_id,
            "priority": priority, "reason": reason, "metadata": metadata or {},
        }
        self.tickets.append(ticket)
        logger.info("mock_backend_handoff_ticket", ticket_id=ticket["id"],
                    target_id=target_id, priority=priority)
        return ticket


def create_backend_connector(config: BackendConfig = None) -> BackendConnector:
    """Factory function to create the appropriate backend connector."""
    config = config or get_settings().backend
    if config.type == "rest" and config.base_url.startswith(("http://", "https://")):
        return RESTBackendConnector(config)
    logger.warning("using_mock_backend", reason="no backend configured or base_url empty")
    return MockBackendConnector()

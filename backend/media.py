"""
Media processor — transcription, OCR and readers used by welcome_ai nodes.

The REST processor posts media references to a media gateway; the mock
returns canned answers so flows can be exercised without providers.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from backend.connector import CollaboratorError
from config.settings import MediaConfig, get_settings

logger = structlog.get_logger()


class MediaProcessor(abc.ABC):

    @abc.abstractmethod
    async def transcribe(self, audio_ref: str, provider: str) -> str:
        ...

    @abc.abstractmethod
    async def extract_fields(self, media_ref: str, provider: str,
                             fields: list[str]) -> dict[str, Any]:
        """OCR a document (payment proof) and return the requested fields."""
        ...

    @abc.abstractmethod
    async def describe_image(self, image_ref: str) -> str:
        ...

    @abc.abstractmethod
    async def read_document(self, document_ref: str) -> str:
        ...

    async def close(self):
        pass


class RESTMediaProcessor(MediaProcessor):

    def __init__(self, config: MediaConfig = None):
        self.config = config or get_settings().media
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                timeout=60.0,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def _request(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(path, json=payload)
        response.raise_for_status()
        return response.json()

    async def _call(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self._request(path, payload)
        except Exception as e:
            logger.error("media_request_failed", path=path, error=str(e))
            raise CollaboratorError(f"media {path} failed: {e}") from e

    async def transcribe(self, audio_ref: str, provider: str) -> str:
        result = await self._call("/transcriptions", {"ref": audio_ref, "provider": provider})
        return result.get("text", "")

    async def extract_fields(self, media_ref: str, provider: str,
                             fields: list[str]) -> dict[str, Any]:
        result = await self._call("/ocr", {"ref": media_ref, "provider": provider, "fields": fields})
        return result.get("fields", {})

    async def describe_image(self, image_ref: str) -> str:
        result = await self._call("/vision", {"ref": image_ref})
        return result.get("description", "")

    async def read_document(self, document_ref: str) -> str:
        result = await self._call("/documents", {"ref": document_ref})
        return result.get("content", "")

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockMediaProcessor(MediaProcessor):
    """Canned answers for development and tests."""

    def __init__(self, transcription: str = "Olá, gostaria de saber sobre meu boleto.",
                 fields: dict[str, Any] = None):
        self.transcription = transcription
        self.fields = fields if fields is not None else {
            "valor": "R$ 1.500,00",
            "data": "10/01/2026",
            "banco": "Banco do Brasil",
            "beneficiario": "Imobiliária XYZ",
            "status": "confirmado",
        }

    async def transcribe(self, audio_ref: str, provider: str) -> str:
        logger.info("mock_media_transcribe", provider=provider)
        return self.transcription

    async def extract_fields(self, media_ref: str, provider: str,
                             fields: list[str]) -> dict[str, Any]:
        logger.info("mock_media_ocr", provider=provider, fields=fields)
        return {k: v for k, v in self.fields.items() if not fields or k in fields}

    async def describe_image(self, image_ref: str) -> str:
        return "Imagem de documento ou comprovante"

    async def read_document(self, document_ref: str) -> str:
        return "Conteúdo do documento extraído"


def create_media_processor(config: MediaConfig = None) -> MediaProcessor:
    config = config or get_settings().media
    if config.type == "rest" and config.base_url.startswith(("http://", "https://")):
        return RESTMediaProcessor(config)
    logger.warning("using_mock_media_processor")
    return MockMediaProcessor()

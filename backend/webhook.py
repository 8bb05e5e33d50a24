"""
Webhook invoker — outbound HTTP calls made by webhook nodes.

Retries transport errors and 5xx answers with exponential backoff.
4xx answers are returned as-is; the flow decides what to do with them.
"""
from __future__ import annotations

import json
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, RetryError, retry_if_exception_type,
    stop_after_attempt, wait_exponential,
)

from config.settings import WebhookConfig, get_settings

logger = structlog.get_logger()


class WebhookError(Exception):
    """The webhook could not be reached or kept failing server-side."""


class _ServerError(Exception):
    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"HTTP {response.status_code}")


@dataclass
class WebhookResponse:
    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class WebhookInvoker:
    """Performs webhook calls on behalf of the flow engine."""

    def __init__(self, config: WebhookConfig = None, client: httpx.AsyncClient = None):
        self.config = config or get_settings().webhook
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def call(
        self,
        url: str,
        method: str = "GET",
        body: Any = None,
        headers: dict[str, str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> WebhookResponse:
        if not url:
            raise WebhookError("webhook url is empty")

        client = await self._get_client()
        method = (method or "GET").upper()
        timeout = timeout or self.config.default_timeout_seconds
        attempts = max(1, retries if retries is not None else self.config.max_retries)

        kwargs: dict[str, Any] = {"headers": headers or {}, "timeout": timeout}
        if body not in (None, "") and method != "GET":
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=0.5, max=5),
                retry=retry_if_exception_type((httpx.TransportError, _ServerError)),
            ):
                with attempt:
                    response = await client.request(method, url, **kwargs)
                    if response.status_code >= 500:
                        raise _ServerError(response)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error("webhook_failed", url=url, method=method, attempts=attempts, error=str(cause))
            raise WebhookError(f"{method} {url} failed: {cause}") from cause
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error("webhook_failed", url=url, method=method, error=str(e))
            raise WebhookError(f"{method} {url} failed: {e}") from e

        logger.info("webhook_called", url=url, method=method, status=response.status_code)
        return WebhookResponse(
            status_code=response.status_code,
            body=self._decode(response),
            headers=dict(response.headers),
        )

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return ""
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError):
            return response.text

    async def close(self):
        if self._client:
            await self._client.aclose()

"""
Completion Engine — LLM calls made by ai_agent and welcome_ai nodes.

Supports both Anthropic and OpenAI providers. Failures raise
CompletionError; the node handlers decide on the fallback text.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from config.settings import LLMConfig, get_settings

logger = structlog.get_logger()


class CompletionError(Exception):
    """The completion service failed or returned no text."""


class CompletionEngine:
    """
    Generates replies for flow nodes using Claude or OpenAI.
    The node's model name is honoured only when it belongs to the
    configured provider; otherwise the configured model is used.
    """

    def __init__(self, config: LLMConfig = None):
        self._config = config or get_settings().llm
        self._client = None
        self._provider = self._config.provider or "anthropic"

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self._config.api_key)
                logger.info("llm_client_initialized", provider=self._provider,
                            model=self._config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    def _pick_model(self, requested: Optional[str]) -> str:
        if requested:
            family = "gpt" if self.is_openai else "claude"
            if requested.startswith(family):
                return requested
        return self._config.model

    @staticmethod
    def _with_tools(system_prompt: str, tool_names: list[str]) -> str:
        if not tool_names:
            return system_prompt
        listing = "\n".join(f"- {name}" for name in tool_names)
        return f"{system_prompt}\n\nFerramentas disponíveis:\n{listing}".strip()

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        tool_names: list[str] = None,
        model: str = None,
        temperature: float = None,
        max_tokens: int = None,
    ) -> str:
        """Single-turn completion. Raises CompletionError when no reply is produced."""
        client = await self._get_client()
        if not client:
            raise CompletionError(f"{self._provider} client unavailable")

        system = self._with_tools(system_prompt, tool_names or [])
        messages = [{"role": "user", "content": user_message or "[início da conversa]"}]
        kwargs: dict[str, Any] = {
            "model": self._pick_model(model),
            "max_tokens": max_tokens or self._config.max_tokens,
            "temperature": temperature if temperature is not None else self._config.temperature,
        }

        try:
            if self.is_openai:
                # OpenAI: system prompt is a message in the messages list
                response = await client.chat.completions.create(
                    messages=[{"role": "system", "content": system}] + messages,
                    **kwargs,
                )
                text = response.choices[0].message.content
            else:
                # Anthropic: system prompt is a separate parameter
                response = await client.messages.create(
                    system=system,
                    messages=messages,
                    **kwargs,
                )
                text = response.content[0].text
        except Exception as e:
            logger.error("llm_completion_failed", provider=self._provider, error=str(e))
            raise CompletionError(str(e)) from e

        if not text or not text.strip():
            raise CompletionError("empty completion")
        return text.strip()

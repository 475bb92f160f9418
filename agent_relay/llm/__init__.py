"""Anthropic provider - streaming HTTP calls to the Messages API."""

import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator

import httpx

from agent_relay.config import ANTHROPIC_BASE_URL, ModelConfig
from agent_relay.conversation import ConversationTurn, to_anthropic_messages
from agent_relay.exceptions import ConfigurationError, LLMAPIError
from agent_relay.llm.sse import (
    SSEDecoder,
    StreamEvent,
    TextFragment,
    ToolCallArgumentFragment,
    ToolCallFinished,
    ToolCallStarted,
    TurnFinished,
)
from agent_relay.logging import get_logger

log = get_logger(__name__)

__all__ = [
    "AnthropicProvider",
    "LLMProvider",
    "SSEDecoder",
    "StreamEvent",
    "TextFragment",
    "ToolCallArgumentFragment",
    "ToolCallFinished",
    "ToolCallStarted",
    "TurnFinished",
    "create_provider",
    "provider_from_config",
]


class LLMProvider(ABC):
    """Abstract base class for streaming LLM providers."""

    @abstractmethod
    def stream(
        self,
        messages: list[ConversationTurn],
        tools: list[dict[str, Any]] | None = None,
        system: str = "",
    ) -> AsyncContextManager[AsyncIterator[StreamEvent]]:
        """Open one upstream call and expose its decoded events.

        The context manager owns the HTTP response; leaving it releases the
        body whether or not the events were fully consumed.

        Raises:
            LLMAPIError: upstream unreachable or non-success status
        """

    async def close(self) -> None:
        """Release provider-level resources."""
        return None


class AnthropicProvider(LLMProvider):
    """Direct Anthropic Messages API provider."""

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        api_key: str | None = None,
        base_url: str = ANTHROPIC_BASE_URL,
        anthropic_version: str = "2023-06-01",
        max_tokens: int = 4000,
        temperature: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Anthropic provider.

        Args:
            model: Model name
            api_key: API key sent as ``x-api-key``
            base_url: API base URL
            anthropic_version: Value of the ``anthropic-version`` header
            max_tokens: Max tokens to generate per upstream call
            temperature: Optional sampling temperature
            client: Optional preconfigured HTTP client (tests use a mock transport)
        """
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.anthropic_version = anthropic_version
        self.max_tokens = max_tokens
        self.temperature = temperature

        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(120.0, connect=10.0),
            follow_redirects=True,
        )

    @staticmethod
    def _convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Convert registry definitions to Anthropic tool format."""
        result = []
        for tool in tools:
            name = tool.get("name")
            if not name:
                continue
            result.append({
                "name": name,
                "description": tool.get("description") or "",
                "input_schema": tool.get("parameters") or {"type": "object", "properties": {}},
            })
        return result

    def _build_body(
        self,
        messages: list[ConversationTurn],
        tools: list[dict[str, Any]] | None,
        system: str,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": to_anthropic_messages(messages),
            "stream": True,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = self._convert_tools(tools)
        if self.temperature is not None:
            body["temperature"] = self.temperature
        return body

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": self.anthropic_version,
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    @asynccontextmanager
    async def stream(
        self,
        messages: list[ConversationTurn],
        tools: list[dict[str, Any]] | None = None,
        system: str = "",
    ) -> AsyncIterator[AsyncIterator[StreamEvent]]:
        """Stream one completion as decoded events."""
        url = f"{self.base_url}/v1/messages"
        body = self._build_body(messages, tools, system)

        try:
            log.debug("Calling Anthropic", model=self.model, url=url, msg_count=len(body["messages"]))
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                log.debug("Anthropic response status", status=response.status_code)
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"API error {response.status_code}: {error_text[:500]}",
                        status_code=response.status_code,
                    )
                yield self._iter_events(response)
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Anthropic HTTP error: {e}") from e

    @staticmethod
    async def _iter_events(response: httpx.Response) -> AsyncIterator[StreamEvent]:
        decoder = SSEDecoder()
        async for chunk in response.aiter_bytes():
            for event in decoder.feed(chunk):
                yield event
            if decoder.finished:
                return
        for event in decoder.close():
            yield event

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "anthropic",
    model: str = "claude-sonnet-4-20250514",
    api_key: str | None = None,
    base_url: str | None = None,
    anthropic_version: str = "2023-06-01",
    max_tokens: int = 4000,
    temperature: float | None = None,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (anthropic, claude)
        model: Model name
        api_key: Optional API key, falls back to ``ANTHROPIC_API_KEY``
        base_url: Optional base URL
        anthropic_version: API version header
        max_tokens: Default max tokens
        temperature: Optional temperature

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name in ("anthropic", "claude"):
        return AnthropicProvider(
            model=model,
            api_key=api_key or os.environ.get("ANTHROPIC_API_KEY") or None,
            base_url=base_url or ANTHROPIC_BASE_URL,
            anthropic_version=anthropic_version,
            max_tokens=max_tokens,
            temperature=temperature,
        )
    raise ConfigurationError(f"Provider '{provider}' not supported. Use 'anthropic'.")


def provider_from_config(model_config: ModelConfig) -> LLMProvider:
    """Create a provider from the `model` config section."""
    return create_provider(
        provider=model_config.provider,
        model=model_config.model,
        api_key=model_config.api_key or None,
        base_url=model_config.base_url or None,
        anthropic_version=model_config.anthropic_version,
        max_tokens=model_config.max_tokens,
        temperature=model_config.temperature,
    )

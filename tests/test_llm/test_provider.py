import json

import httpx
import pytest

from agent_relay.config import ModelConfig
from agent_relay.conversation import ConversationTurn, ToolResultBlock, ToolUseBlock
from agent_relay.exceptions import ConfigurationError, LLMAPIError, StreamTerminatedError
from agent_relay.llm import (
    AnthropicProvider,
    TextFragment,
    TurnFinished,
    create_provider,
    provider_from_config,
)

STREAM_BODY = (
    b'event: content_block_delta\n'
    b'data: {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "4"}}\n\n'
    b'event: message_stop\n'
    b'data: {"type": "message_stop"}\n\n'
)


def _provider(handler) -> AnthropicProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicProvider(
        model="claude-test",
        api_key="sk-test",
        base_url="https://upstream.test/",
        client=client,
    )


async def _collect(provider: AnthropicProvider, messages, **kwargs) -> list:
    async with provider.stream(messages, **kwargs) as events:
        return [event async for event in events]


def test_create_provider_supports_claude_alias():
    provider = create_provider(provider="claude", model="claude-3-5-sonnet-latest", api_key="k")
    assert isinstance(provider, AnthropicProvider)
    assert provider.model == "claude-3-5-sonnet-latest"


def test_create_provider_uses_env_api_key(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")
    provider = create_provider(provider="anthropic")
    assert provider.api_key == "env-key"


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ConfigurationError):
        create_provider(provider="ollama")


def test_provider_from_config_maps_model_section():
    provider = provider_from_config(
        ModelConfig(model="claude-x", api_key="k", base_url="https://proxy.test", max_tokens=123)
    )
    assert provider.model == "claude-x"
    assert provider.base_url == "https://proxy.test"
    assert provider.max_tokens == 123


@pytest.mark.asyncio
async def test_stream_posts_messages_request_and_decodes_events():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, content=STREAM_BODY, headers={"content-type": "text/event-stream"})

    provider = _provider(handler)
    history = [
        ConversationTurn.text("user", "2+2?"),
        ConversationTurn(
            role="assistant",
            content=(ToolUseBlock(id="t1", name="calc", raw_arguments='{"e": "2+2"}', arguments={"e": "2+2"}),),
        ),
        ConversationTurn(role="tool", content=(ToolResultBlock(tool_use_id="t1", payload="4", is_error=False),)),
    ]
    tools = [{"name": "calc", "description": "Calculator", "parameters": {"type": "object", "properties": {}}}]

    events = await _collect(provider, history, tools=tools, system="Be brief.")
    await provider.close()

    assert events == [TextFragment("4"), TurnFinished()]
    assert captured["url"] == "https://upstream.test/v1/messages"
    assert captured["headers"]["x-api-key"] == "sk-test"
    assert captured["headers"]["anthropic-version"] == "2023-06-01"

    body = captured["body"]
    assert body["model"] == "claude-test"
    assert body["stream"] is True
    assert body["system"] == "Be brief."
    assert body["tools"] == [
        {"name": "calc", "description": "Calculator", "input_schema": {"type": "object", "properties": {}}}
    ]
    assert body["messages"] == [
        {"role": "user", "content": [{"type": "text", "text": "2+2?"}]},
        {"role": "assistant", "content": [{"type": "tool_use", "id": "t1", "name": "calc", "input": {"e": "2+2"}}]},
        {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "4"}]},
    ]


@pytest.mark.asyncio
async def test_non_success_status_raises_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(529, json={"type": "error", "error": {"message": "Overloaded"}})

    provider = _provider(handler)

    with pytest.raises(LLMAPIError) as exc_info:
        await _collect(provider, [ConversationTurn.text("user", "hi")])

    assert exc_info.value.status_code == 529
    assert "Overloaded" in str(exc_info.value)


@pytest.mark.asyncio
async def test_transport_failure_raises_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)

    with pytest.raises(LLMAPIError) as exc_info:
        await _collect(provider, [ConversationTurn.text("user", "hi")])

    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_body_ending_without_terminal_marker_raises():
    truncated = STREAM_BODY.split(b"event: message_stop")[0]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=truncated)

    provider = _provider(handler)

    with pytest.raises(StreamTerminatedError):
        await _collect(provider, [ConversationTurn.text("user", "hi")])

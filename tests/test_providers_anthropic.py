from __future__ import annotations

import json
import logging
from typing import Any

import httpx
import pytest

from relay.config import BackendProfile
from relay.errors import UpstreamError
from relay.providers import DummyProvider
from relay.providers.anthropic import AnthropicProvider, ClaudeCodeProvider, messages_url
from relay.providers.huggingface import HuggingFaceProvider, render_prompt
from relay.types import CanonicalRequest, DoneEvent, TextEvent, UsageEvent


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _profile(kind: str, **overrides: Any) -> BackendProfile:
    data: dict[str, Any] = {"id": f"{kind}-main", "kind": kind, "api_key": "key-123"}
    data.update(overrides)
    return BackendProfile.model_validate(data)


def _request(**overrides: Any) -> CanonicalRequest:
    data: dict[str, Any] = {"messages": [{"role": "user", "content": "ping"}]}
    data.update(overrides)
    return CanonicalRequest.model_validate(data)


def _capture(calls: list[httpx.Request], body: Any, status: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


ANTHROPIC_BODY = {
    "model": "claude-3-5-sonnet-20241022",
    "content": [
        {"type": "thinking", "thinking": "considering"},
        {"type": "text", "text": "Hello "},
        {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {"q": "weather"}},
        {"type": "server_tool_use", "id": "x", "name": "ignored"},
        {"type": "text", "text": "there"},
    ],
    "stop_reason": "tool_use",
    "usage": {"input_tokens": 11, "output_tokens": 5},
}


@pytest.mark.anyio
async def test_anthropic_payload_and_headers(anyio_backend: str) -> None:
    _ = anyio_backend
    calls: list[httpx.Request] = []
    provider = AnthropicProvider(transport=_capture(calls, ANTHROPIC_BODY))
    request = _request(
        system_prompt="be brief",
        messages=[
            {"role": "system", "content": "answer in English"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": [{"type": "text", "text": "weather?"}]},
        ],
        tools=[{"name": "lookup", "parameters": {"type": "object", "properties": {"q": {"type": "string"}}}}],
        temperature=1.7,
    )

    await provider.complete(_profile("anthropic"), request)

    sent = calls[0]
    assert str(sent.url) == "https://api.anthropic.com/v1/messages"
    assert sent.headers["x-api-key"] == "key-123"
    assert sent.headers["anthropic-version"] == "2023-06-01"
    assert "anthropic-beta" not in sent.headers
    payload = json.loads(sent.content)
    assert payload["system"] == "be brief\n\nanswer in English"
    assert [message["role"] for message in payload["messages"]] == ["user", "assistant", "user"]
    assert payload["messages"][2]["content"] == [{"type": "text", "text": "weather?"}]
    assert payload["temperature"] == 1.0
    assert payload["max_tokens"] == 4096
    assert payload["tools"] == [
        {
            "name": "lookup",
            "description": "",
            "input_schema": {"type": "object", "properties": {"q": {"type": "string"}}},
        }
    ]
    assert "stream" not in payload


@pytest.mark.anyio
async def test_anthropic_response_blocks_in_document_order(anyio_backend: str) -> None:
    _ = anyio_backend
    provider = AnthropicProvider(transport=_capture([], ANTHROPIC_BODY))
    response = await provider.complete(_profile("anthropic"), _request())

    assert response.content == "Hello there"
    assert response.reasoning == "considering"
    assert [(call.id, call.name, call.parameters) for call in response.tool_calls] == [
        ("toolu_1", "lookup", {"q": "weather"})
    ]
    assert response.stop_reason == "tool_calls"
    assert response.usage.total_tokens == 16


@pytest.mark.anyio
async def test_anthropic_zero_blocks_gives_empty_content(anyio_backend: str) -> None:
    _ = anyio_backend
    body = {"content": [], "stop_reason": "end_turn", "usage": {}}
    provider = AnthropicProvider(transport=_capture([], body))
    response = await provider.complete(_profile("anthropic", model="claude-3-5-haiku-20241022"), _request())
    assert response.content == ""
    assert response.tool_calls == []
    assert response.stop_reason == "stop"
    assert response.model == "claude-3-5-haiku-20241022"


@pytest.mark.anyio
async def test_anthropic_rate_limit_error_is_quota(anyio_backend: str) -> None:
    _ = anyio_backend
    body = {"type": "error", "error": {"type": "rate_limit_error", "message": "Number of requests has been limited"}}
    provider = AnthropicProvider(transport=_capture([], body, status=400))
    with pytest.raises(UpstreamError) as excinfo:
        await provider.complete(_profile("anthropic"), _request())
    assert excinfo.value.error_type == "rate_limit_error"
    assert provider.is_quota_error(excinfo.value)
    overloaded = UpstreamError(529, "Overloaded", error_type="overloaded_error")
    assert not provider.is_quota_error(overloaded)


@pytest.mark.parametrize(
    ("base_url", "expected"),
    [
        ("https://api.anthropic.com", "https://api.anthropic.com/v1/messages"),
        ("https://api.anthropic.com/v1", "https://api.anthropic.com/v1/messages"),
        ("https://gateway.local/anthropic", "https://gateway.local/anthropic/v1/messages"),
        ("https://gateway.local/v1/messages", "https://gateway.local/v1/messages"),
    ],
)
def test_messages_url(base_url: str, expected: str) -> None:
    assert messages_url(base_url) == expected


@pytest.mark.anyio
async def test_anthropic_stream(anyio_backend: str) -> None:
    _ = anyio_backend
    frames = [
        {"type": "message_start", "message": {"usage": {"input_tokens": 3, "output_tokens": 1}}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "hel"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
        {"type": "message_delta", "delta": {"stop_reason": "max_tokens"}, "usage": {"output_tokens": 2}},
        {"type": "message_stop"},
    ]
    body = "".join(f"event: {frame['type']}\ndata: {json.dumps(frame)}\n\n" for frame in frames)
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=body.encode("utf-8"))

    provider = AnthropicProvider(transport=httpx.MockTransport(handler))
    events = [event async for event in provider.stream(_profile("anthropic"), _request())]

    assert events == [
        UsageEvent(3, 1),
        TextEvent("hel"),
        TextEvent("lo"),
        UsageEvent(3, 2),
        DoneEvent("length"),
    ]
    assert json.loads(calls[0].content)["stream"] is True


@pytest.mark.anyio
async def test_claude_code_defaults_and_model_fallback(
    anyio_backend: str, caplog: pytest.LogCaptureFixture
) -> None:
    _ = anyio_backend
    calls: list[httpx.Request] = []
    provider = ClaudeCodeProvider(transport=_capture(calls, {"content": [{"type": "text", "text": "ok"}]}))

    with caplog.at_level(logging.WARNING, logger="relay.providers.anthropic"):
        response = await provider.complete(_profile("claude-code", model="claude-2.1"), _request())

    sent = calls[0]
    payload = json.loads(sent.content)
    assert str(sent.url) == "https://api.anthropic.com/v1/messages"
    assert sent.headers["anthropic-beta"] == "tools-2024-04-04"
    assert payload["model"] == "claude-sonnet-4-20250514"
    assert payload["max_tokens"] == 8000
    assert response.model == "claude-sonnet-4-20250514"
    assert any("claude-2.1" in record.getMessage() for record in caplog.records)
    assert all("key-123" not in record.getMessage() for record in caplog.records)


@pytest.mark.anyio
async def test_claude_code_keeps_supported_model(anyio_backend: str) -> None:
    _ = anyio_backend
    calls: list[httpx.Request] = []
    provider = ClaudeCodeProvider(transport=_capture(calls, {"content": []}))
    await provider.complete(_profile("claude-code", model="claude-opus-4-20250514"), _request())
    assert json.loads(calls[0].content)["model"] == "claude-opus-4-20250514"


def test_render_prompt_prefixes_roles() -> None:
    request = _request(
        system_prompt="sys",
        messages=[
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "bye"},
        ],
    )
    assert render_prompt(request) == "System: sys\nUser: hi\nAssistant: hello\nUser: bye\nAssistant: "


@pytest.mark.anyio
async def test_huggingface_text_generation(anyio_backend: str) -> None:
    _ = anyio_backend
    calls: list[httpx.Request] = []
    provider = HuggingFaceProvider(transport=_capture(calls, [{"generated_text": "a reply"}]))
    response = await provider.complete(_profile("huggingface", model="gpt2"), _request(temperature=0.4))

    sent = calls[0]
    assert str(sent.url) == "https://api-inference.huggingface.co/models/gpt2"
    assert sent.headers["Authorization"] == "Bearer key-123"
    payload = json.loads(sent.content)
    assert payload["inputs"] == "User: ping\nAssistant: "
    assert payload["parameters"] == {
        "max_new_tokens": 512,
        "temperature": 0.4,
        "top_p": 0.9,
        "do_sample": True,
        "return_full_text": False,
    }
    assert response.content == "a reply"
    assert response.usage.input_tokens == 1
    assert response.usage.output_tokens == 2
    assert response.stop_reason == "stop"


@pytest.mark.anyio
async def test_huggingface_chat_model_uses_chat_completions(anyio_backend: str) -> None:
    _ = anyio_backend
    calls: list[httpx.Request] = []
    body = {
        "choices": [{"message": {"content": "chat reply"}}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 4},
    }
    provider = HuggingFaceProvider(transport=_capture(calls, body))
    model = "mistralai/Mistral-7B-Instruct-v0.2"
    response = await provider.complete(_profile("huggingface", model=model), _request(system_prompt="sys"))

    sent = calls[0]
    assert str(sent.url) == "https://api-inference.huggingface.co/chat/completions"
    payload = json.loads(sent.content)
    assert payload["model"] == model
    assert payload["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "ping"},
    ]
    assert payload["max_tokens"] == 2048
    assert response.content == "chat reply"
    assert (response.usage.input_tokens, response.usage.output_tokens) == (12, 4)


@pytest.mark.anyio
async def test_huggingface_default_model_is_conversational(anyio_backend: str) -> None:
    _ = anyio_backend
    calls: list[httpx.Request] = []
    provider = HuggingFaceProvider(transport=_capture(calls, {"generated_text": "hey"}))
    events = [event async for event in provider.stream(_profile("huggingface"), _request())]

    sent = calls[0]
    assert sent.url.path == "/models/microsoft/DialoGPT-medium"
    payload = json.loads(sent.content)
    assert payload["inputs"] == {"past_user_inputs": [], "generated_responses": [], "text": "ping"}
    assert payload["parameters"]["max_length"] == 512
    assert events == [TextEvent("hey"), UsageEvent(1, 1), DoneEvent("stop")]


@pytest.mark.anyio
async def test_huggingface_string_error_envelope(anyio_backend: str) -> None:
    _ = anyio_backend
    provider = HuggingFaceProvider(transport=_capture([], {"error": "Rate limit reached. Please log in."}, status=429))
    with pytest.raises(UpstreamError) as excinfo:
        await provider.complete(_profile("huggingface", model="gpt2"), _request())
    assert excinfo.value.message == "Rate limit reached. Please log in."
    assert provider.is_quota_error(excinfo.value)


@pytest.mark.anyio
async def test_dummy_provider_echoes_without_credentials(anyio_backend: str) -> None:
    _ = anyio_backend
    provider = DummyProvider()
    profile = BackendProfile(id="dummy", kind="dummy")
    response = await provider.complete(profile, _request())
    assert response.content == "dummy:ping"
    assert response.usage.input_tokens == 1
    assert response.usage.output_tokens == 3
    events = [event async for event in provider.stream(profile, _request())]
    assert events == [TextEvent("dummy:ping"), UsageEvent(1, 3), DoneEvent("stop")]

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlparse, urlunparse

from ..config import BackendProfile, ProviderKind
from ..errors import UpstreamError
from ..types import (
    CanonicalRequest,
    CanonicalResponse,
    StreamEvent,
    TextEvent,
    ToolCall,
    Usage,
    UsageEvent,
    content_text,
)
from . import HTTPProvider

logger = logging.getLogger(__name__)

_AZURE_HOST_SUFFIXES = (
    "openai.azure.com",
    "openai.azure.us",
    "openai.azure.cn",
    "cognitiveservices.azure.com",
)


def chat_completions_url(base_url: str) -> tuple[str, bool]:
    """Return the chat-completions endpoint for ``base_url`` and whether it is an Azure host."""
    parsed = urlparse(base_url)
    segments = [segment for segment in (parsed.path or "").split("/") if segment]
    lowered = [segment.lower() for segment in segments]
    hostname = (parsed.hostname or "").lower()
    is_azure = any(hostname == suffix or hostname.endswith(f".{suffix}") for suffix in _AZURE_HOST_SUFFIXES)
    if lowered[-2:] == ["chat", "completions"]:
        pass
    elif lowered[-1:] == ["chat"]:
        segments.append("completions")
    else:
        if not segments and hostname.endswith("openai.com"):
            segments.append("v1")
        segments.extend(["chat", "completions"])
    rebuilt = parsed._replace(path="/" + "/".join(segments))
    return urlunparse(rebuilt), is_azure


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("tool call arguments are not valid JSON; keeping raw text")
        return {"raw_arguments": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _int_or_zero(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


class OpenAIStreamParser:
    """Maps ``chat.completion.chunk`` payloads onto canonical events."""

    def parse(self, payload: dict[str, Any]) -> list[StreamEvent]:
        error_payload = payload.get("error")
        if error_payload is not None:
            if isinstance(error_payload, dict):
                message = str(error_payload.get("message") or "stream error")
                code = error_payload.get("code")
                error_type = error_payload.get("type") or (code if isinstance(code, str) else None)
                status = code if isinstance(code, int) else None
            else:
                message, error_type, status = str(error_payload), None, None
            raise UpstreamError(status, message, error_type=error_type)
        events: list[StreamEvent] = []
        choices = payload.get("choices")
        if isinstance(choices, list):
            for position, raw_choice in enumerate(choices):
                if not isinstance(raw_choice, dict):
                    continue
                index = raw_choice.get("index", position)
                if index != 0:
                    continue
                delta = raw_choice.get("delta")
                if isinstance(delta, dict):
                    text = delta.get("content")
                    if isinstance(text, str) and text:
                        events.append(TextEvent(text))
        usage = payload.get("usage")
        if isinstance(usage, dict):
            events.append(
                UsageEvent(
                    _int_or_zero(usage.get("prompt_tokens")),
                    _int_or_zero(usage.get("completion_tokens")),
                )
            )
        return events


class OpenAICompatProvider(HTTPProvider):
    kind = ProviderKind.OPENAI
    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-4"
    default_max_tokens = 4096
    temperature_range = (0.0, 2.0)
    _QUOTA_ERROR_TYPES = frozenset(
        {"insufficient_quota", "rate_limit_exceeded", "requests", "tokens"}
    )

    def _messages(self, request: CanonicalRequest) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        for message in request.messages:
            content = message.content
            if isinstance(content, list):
                content = content_text(content)
            messages.append({"role": message.role, "content": content})
        return messages

    def _tools(self, request: CanonicalRequest) -> list[dict[str, Any]]:
        tools: list[dict[str, Any]] = []
        for tool in request.tools or []:
            function: dict[str, Any] = {"name": tool.name, "parameters": tool.input_schema()}
            if tool.description:
                function["description"] = tool.description
            tools.append({"type": "function", "function": function})
        return tools

    def _build_request(
        self, profile: BackendProfile, request: CanonicalRequest, *, stream: bool
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        key = self._api_key(profile)
        url, is_azure = chat_completions_url(self._base_url(profile))
        headers: dict[str, str] = {"Content-Type": "application/json"}
        headers.update(profile.headers)
        if key:
            if is_azure:
                headers["api-key"] = key
            else:
                headers["Authorization"] = f"Bearer {key}"
        payload: dict[str, Any] = {
            "model": self._model(profile),
            "messages": self._messages(request),
            "max_tokens": self._max_tokens(profile, request),
            "temperature": self._temperature(profile, request),
            "stream": stream,
        }
        tools = self._tools(request)
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return url, headers, payload

    def _parse_response(self, profile: BackendProfile, data: Any) -> CanonicalResponse:
        if not isinstance(data, dict):
            raise UpstreamError(None, "unexpected chat completion body")
        raw_choices = data.get("choices") or []
        first_choice = raw_choices[0] if raw_choices and isinstance(raw_choices[0], dict) else {}
        message = first_choice.get("message")
        if not isinstance(message, dict):
            message = {}
        content = content_text(message.get("content"))
        if not content and isinstance(first_choice.get("text"), str):
            content = first_choice["text"]
        tool_calls: list[ToolCall] = []
        for position, raw_call in enumerate(message.get("tool_calls") or []):
            if not isinstance(raw_call, dict):
                continue
            function = raw_call.get("function")
            if not isinstance(function, dict):
                continue
            name = function.get("name")
            if not isinstance(name, str) or not name:
                continue
            identifier = raw_call.get("id")
            tool_calls.append(
                ToolCall(
                    id=identifier if isinstance(identifier, str) and identifier else f"call_{position}",
                    name=name,
                    parameters=_parse_arguments(function.get("arguments")),
                )
            )
        usage = data.get("usage") or {}
        finish_reason = first_choice.get("finish_reason")
        return CanonicalResponse(
            content=content,
            tool_calls=tool_calls,
            usage=Usage(
                input_tokens=_int_or_zero(usage.get("prompt_tokens")),
                output_tokens=_int_or_zero(usage.get("completion_tokens")),
            ),
            model=data.get("model") or self._model(profile),
            stop_reason=finish_reason if isinstance(finish_reason, str) else None,
        )

    def _stream_parser(self, profile: BackendProfile) -> OpenAIStreamParser:
        return OpenAIStreamParser()


class GroqProvider(OpenAICompatProvider):
    kind = ProviderKind.GROQ
    default_base_url = "https://api.groq.com/openai/v1"
    default_model = "llama-3.1-70b-versatile"
    default_max_tokens = 2048


class XAIProvider(OpenAICompatProvider):
    kind = ProviderKind.XAI
    default_base_url = "https://api.x.ai/v1"
    default_model = "grok-beta"
    temperature_range = (0.0, 1.0)


class FireworksProvider(OpenAICompatProvider):
    kind = ProviderKind.FIREWORKS
    default_base_url = "https://api.fireworks.ai/inference/v1"
    default_model = "accounts/fireworks/models/llama-v2-7b-chat"
    default_max_tokens = 2048
    temperature_range = (0.0, 1.0)


class CerebrasProvider(OpenAICompatProvider):
    kind = ProviderKind.CEREBRAS
    default_base_url = "https://api.cerebras.ai/v1"
    default_model = "llama3.1-8b"
    default_max_tokens = 2048
    temperature_range = (0.0, 1.0)

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse, urlunparse

from ..config import BackendProfile, ProviderKind
from ..errors import UpstreamError
from ..types import (
    CanonicalRequest,
    CanonicalResponse,
    DoneEvent,
    StreamEvent,
    TextEvent,
    ToolCall,
    Usage,
    UsageEvent,
    content_text,
)
from . import HTTPProvider

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
_STOP_REASONS = {
    "tool_use": "tool_calls",
    "max_tokens": "length",
    "message_limit": "length",
    "end_turn": "stop",
    "stop_sequence": "stop",
}


def map_stop_reason(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    return _STOP_REASONS.get(raw, raw)


def _is_version_segment(segment: str) -> bool:
    lowered = segment.lower()
    if not lowered.startswith("v"):
        return False
    suffix = lowered[1:]
    return bool(suffix) and suffix[0].isdigit()


def messages_url(base_url: str) -> str:
    """Resolve the ``/v1/messages`` endpoint, keeping any version segment already in ``base_url``."""
    parsed = urlparse(base_url)
    segments = [segment for segment in (parsed.path or "").split("/") if segment]
    if segments:
        ends_with_messages = segments[-1].lower() == "messages"
        if not any(_is_version_segment(segment) for segment in segments):
            segments.insert(len(segments) - 1 if ends_with_messages else len(segments), "v1")
        if not ends_with_messages:
            segments.append("messages")
    else:
        segments = ["v1", "messages"]
    return urlunparse(parsed._replace(path="/" + "/".join(segments)))


def _int_or_zero(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


class AnthropicStreamParser:
    """Maps Messages API stream events onto canonical events.

    ``message_start`` carries the prompt token count and ``message_delta`` the
    running output count, so the input figure is carried forward to keep each
    emitted ``UsageEvent`` a complete total.
    """

    def __init__(self) -> None:
        self._input_tokens = 0
        self._stop_reason: str | None = None

    def parse(self, payload: dict[str, Any]) -> list[StreamEvent]:
        event_type = payload.get("type")
        if event_type == "error":
            error = payload.get("error") or {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise UpstreamError(
                None,
                str(error.get("message") or "stream error"),
                error_type=error.get("type") if isinstance(error.get("type"), str) else None,
            )
        if event_type == "message_start":
            message = payload.get("message") or {}
            usage = message.get("usage") or {}
            self._input_tokens = _int_or_zero(usage.get("input_tokens"))
            return [UsageEvent(self._input_tokens, _int_or_zero(usage.get("output_tokens")))]
        if event_type == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") == "text" and block.get("text"):
                return [TextEvent(block["text"])]
            return []
        if event_type == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [TextEvent(delta["text"])]
            return []
        if event_type == "message_delta":
            delta = payload.get("delta") or {}
            self._stop_reason = map_stop_reason(delta.get("stop_reason")) or self._stop_reason
            usage = payload.get("usage")
            if isinstance(usage, dict):
                input_tokens = _int_or_zero(usage.get("input_tokens")) or self._input_tokens
                return [UsageEvent(input_tokens, _int_or_zero(usage.get("output_tokens")))]
            return []
        if event_type == "message_stop":
            return [DoneEvent(self._stop_reason)]
        # ping, content_block_stop and unknown event types carry nothing canonical
        return []


class AnthropicProvider(HTTPProvider):
    kind = ProviderKind.ANTHROPIC
    default_base_url = "https://api.anthropic.com"
    default_model = "claude-3-5-sonnet-20241022"
    default_max_tokens = 4096
    temperature_range = (0.0, 1.0)
    _QUOTA_ERROR_TYPES = frozenset({"rate_limit_error"})

    def _headers(self, profile: BackendProfile) -> dict[str, str]:
        headers = {
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        headers.update(profile.headers)
        key = self._api_key(profile)
        if key:
            headers["x-api-key"] = key
        return headers

    def _build_request(
        self, profile: BackendProfile, request: CanonicalRequest, *, stream: bool
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = self._headers(profile)
        system_parts: list[str] = []
        if request.system_prompt:
            system_parts.append(request.system_prompt)
        messages: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role == "system":
                text = message.text()
                if text:
                    system_parts.append(text)
                continue
            if isinstance(message.content, list):
                content: Any = [block for block in message.content if isinstance(block, dict)]
            else:
                content = message.content
            messages.append({"role": message.role, "content": content})
        payload: dict[str, Any] = {
            "model": self._model(profile),
            "messages": messages,
            "max_tokens": self._max_tokens(profile, request),
            "temperature": self._temperature(profile, request),
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if request.tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description or "",
                    "input_schema": tool.input_schema(),
                }
                for tool in request.tools
            ]
        if stream:
            payload["stream"] = True
        return messages_url(self._base_url(profile)), headers, payload

    def _parse_response(self, profile: BackendProfile, data: Any) -> CanonicalResponse:
        if not isinstance(data, dict):
            raise UpstreamError(None, "unexpected messages body")
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(content_text(block.get("text")))
            elif block_type == "thinking":
                reasoning_parts.append(content_text(block.get("thinking")))
            elif block_type == "tool_use":
                name = block.get("name")
                if not isinstance(name, str) or not name:
                    continue
                raw_input = block.get("input")
                tool_calls.append(
                    ToolCall(
                        id=str(block.get("id") or f"toolu_{len(tool_calls)}"),
                        name=name,
                        parameters=raw_input if isinstance(raw_input, dict) else {},
                    )
                )
        usage = data.get("usage") or {}
        reasoning = "".join(reasoning_parts)
        return CanonicalResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            usage=Usage(
                input_tokens=_int_or_zero(usage.get("input_tokens")),
                output_tokens=_int_or_zero(usage.get("output_tokens")),
            ),
            model=data.get("model") or self._model(profile),
            stop_reason=map_stop_reason(data.get("stop_reason")),
            reasoning=reasoning or None,
        )

    def _stream_parser(self, profile: BackendProfile) -> AnthropicStreamParser:
        return AnthropicStreamParser()


class ClaudeCodeProvider(AnthropicProvider):
    """Anthropic Messages API with the tool-use beta and a pinned model list."""

    kind = ProviderKind.CLAUDE_CODE
    default_base_url = "https://api.anthropic.com/v1"
    default_model = "claude-sonnet-4-20250514"
    default_max_tokens = 8000
    SUPPORTED_MODELS = (
        "claude-sonnet-4-20250514",
        "claude-opus-4-20250514",
        "claude-3-7-sonnet-20250219",
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
    )
    BETA_FEATURES = "tools-2024-04-04"

    def _model(self, profile: BackendProfile) -> str:
        model = profile.model or self.default_model
        if model not in self.SUPPORTED_MODELS:
            logger.warning(
                "claude-code model %s not supported for profile %s; using %s",
                model,
                profile.id,
                self.default_model,
            )
            return self.default_model
        return model

    def _headers(self, profile: BackendProfile) -> dict[str, str]:
        headers = super()._headers(profile)
        headers.setdefault("anthropic-beta", self.BETA_FEATURES)
        return headers

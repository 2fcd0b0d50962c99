from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from ..config import BackendProfile, ProviderKind
from ..types import (
    CanonicalRequest,
    CanonicalResponse,
    DoneEvent,
    StreamEvent,
    TextEvent,
    Usage,
    UsageEvent,
    content_text,
    estimate_request_tokens,
    estimate_tokens,
)
from . import HTTPProvider

_CONVERSATIONAL_MARKERS = ("dialogpt", "blenderbot", "conversational")
_CHAT_MARKERS = ("chat", "instruct", "assistant")
_ROLE_PREFIX = {"system": "System: ", "assistant": "Assistant: ", "user": "User: "}
_TOP_P = 0.9
_REPETITION_PENALTY = 1.03


def is_conversational_model(model: str) -> bool:
    lowered = model.lower()
    return any(marker in lowered for marker in _CONVERSATIONAL_MARKERS)


def is_chat_model(model: str) -> bool:
    lowered = model.lower()
    return any(marker in lowered for marker in _CHAT_MARKERS)


def _conversation(request: CanonicalRequest) -> list[tuple[str, str]]:
    turns: list[tuple[str, str]] = []
    if request.system_prompt:
        turns.append(("system", request.system_prompt))
    turns.extend((message.role, message.text()) for message in request.messages)
    return turns


def render_prompt(request: CanonicalRequest) -> str:
    """Flatten a conversation into the role-prefixed prompt text-generation models expect."""
    lines = [_ROLE_PREFIX.get(role, "User: ") + text for role, text in _conversation(request)]
    return "\n".join(lines) + "\nAssistant: "


class HuggingFaceProvider(HTTPProvider):
    """Hugging Face Inference API.

    The payload shape depends on the model id: conversational models get the
    ``past_user_inputs`` form, chat/instruct models go through the
    OpenAI-style ``/chat/completions`` route and everything else is treated
    as plain text generation. The API reports no token counts and has no
    incremental stream, so ``stream`` replays a full completion.
    """

    kind = ProviderKind.HUGGINGFACE
    default_base_url = "https://api-inference.huggingface.co"
    default_model = "microsoft/DialoGPT-medium"
    default_max_tokens = 512

    def _max_tokens(self, profile: BackendProfile, request: CanonicalRequest) -> int:
        value = super()._max_tokens(profile, request)
        if request.max_tokens is None and profile.max_tokens is None and is_chat_model(self._model(profile)):
            return 2048
        return value

    def _build_request(
        self, profile: BackendProfile, request: CanonicalRequest, *, stream: bool
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        key = self._api_key(profile)
        headers = {"Content-Type": "application/json"}
        headers.update(profile.headers)
        if key:
            headers["Authorization"] = f"Bearer {key}"
        base = self._base_url(profile)
        model = self._model(profile)
        max_tokens = self._max_tokens(profile, request)
        temperature = self._temperature(profile, request)
        if is_conversational_model(model):
            turns = _conversation(request)
            payload: dict[str, Any] = {
                "inputs": {
                    "past_user_inputs": [],
                    "generated_responses": [],
                    "text": turns[-1][1] if turns else "",
                },
                "parameters": {
                    "max_length": max_tokens,
                    "temperature": temperature,
                    "repetition_penalty": _REPETITION_PENALTY,
                    "do_sample": True,
                },
            }
            return f"{base}/models/{model}", headers, payload
        if is_chat_model(model):
            payload = {
                "model": model,
                "messages": [{"role": role, "content": text} for role, text in _conversation(request)],
                "max_tokens": max_tokens,
                "temperature": temperature,
                "top_p": _TOP_P,
                "stream": False,
            }
            return f"{base}/chat/completions", headers, payload
        payload = {
            "inputs": render_prompt(request),
            "parameters": {
                "max_new_tokens": max_tokens,
                "temperature": temperature,
                "top_p": _TOP_P,
                "do_sample": True,
                "return_full_text": False,
            },
        }
        return f"{base}/models/{model}", headers, payload

    def _parse_response(self, profile: BackendProfile, data: Any) -> CanonicalResponse:
        content = ""
        usage = Usage()
        if isinstance(data, dict) and isinstance(data.get("choices"), list):
            choices = data["choices"]
            first = choices[0] if choices and isinstance(choices[0], dict) else {}
            message = first.get("message") or {}
            content = content_text(message.get("content")) if isinstance(message, dict) else ""
            reported = data.get("usage")
            if isinstance(reported, dict):
                usage = Usage(
                    input_tokens=int(reported.get("prompt_tokens") or 0),
                    output_tokens=int(reported.get("completion_tokens") or 0),
                )
        elif isinstance(data, dict) and "generated_text" in data:
            content = content_text(data.get("generated_text"))
        elif isinstance(data, list) and data:
            first = data[0]
            if isinstance(first, dict):
                content = content_text(first.get("generated_text"))
        elif isinstance(data, str):
            content = data
        return CanonicalResponse(
            content=content,
            usage=usage,
            model=self._model(profile),
            stop_reason="stop",
        )

    async def complete(
        self, profile: BackendProfile, request: CanonicalRequest
    ) -> CanonicalResponse:
        response = await super().complete(profile, request)
        if response.usage.total_tokens == 0:
            # text-generation and conversational endpoints report no token counts
            estimated = Usage(
                input_tokens=estimate_request_tokens(request),
                output_tokens=estimate_tokens(response.content),
            )
            response = response.model_copy(update={"usage": estimated})
        return response

    async def stream(
        self, profile: BackendProfile, request: CanonicalRequest
    ) -> AsyncIterator[StreamEvent]:
        response = await self.complete(profile, request)
        yield TextEvent(response.content)
        yield UsageEvent(response.usage.input_tokens, response.usage.output_tokens)
        yield DoneEvent(response.stop_reason)

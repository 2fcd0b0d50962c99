import logging
import math
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, ClassVar, Dict

import httpx

from ..config import BackendProfile, ProviderKind
from ..errors import ConfigurationError, UpstreamError
from ..sse import StreamNormalizer, StreamParser
from ..types import (
    CanonicalRequest,
    CanonicalResponse,
    DoneEvent,
    StreamEvent,
    TextEvent,
    Usage,
    UsageEvent,
    estimate_request_tokens,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

_QUOTA_KEYWORDS: tuple[str, ...] = (
    "quota",
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
    "exceeded",
)
_MAX_ERROR_TEXT = 500


def _retry_after_seconds(response: httpx.Response) -> int | None:
    header = response.headers.get("Retry-After")
    if not header:
        return None
    value = header.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(int(math.ceil(seconds)), 0)
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    delta = (parsed - datetime.now(timezone.utc)).total_seconds()
    return max(int(delta), 0)


def upstream_error_from_response(response: httpx.Response) -> UpstreamError:
    """Best-effort parse of a backend error envelope.

    Understands ``{"error": {"message", "type", "code"}}`` (OpenAI and
    Anthropic), ``{"error": "text"}`` (Hugging Face) and a top-level
    ``message``. Falls back to the raw body and then the reason phrase.
    """
    status = response.status_code
    message: str | None = None
    error_type: str | None = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
            for key in ("type", "code"):
                candidate = error_field.get(key)
                if isinstance(candidate, str) and candidate:
                    error_type = candidate
                    break
        elif isinstance(error_field, str) and error_field:
            message = error_field
        if message is None:
            nested_message = payload.get("message")
            if isinstance(nested_message, str) and nested_message:
                message = nested_message
    if message is None:
        text = response.text.strip()
        if text:
            message = text[:_MAX_ERROR_TEXT]
    if message is None:
        reason = response.reason_phrase
        message = reason or f"HTTP {status}"
    return UpstreamError(
        status,
        message,
        error_type=error_type,
        retry_after=_retry_after_seconds(response),
    )


def _transport_error(exc: httpx.HTTPError) -> UpstreamError:
    detail = str(exc) or exc.__class__.__name__
    return UpstreamError(None, f"transport error: {detail}", error_type="transport")


def clamp(value: float, bounds: tuple[float, float]) -> float:
    low, high = bounds
    return max(low, min(high, value))


class BaseProvider:
    kind: ClassVar[ProviderKind]
    default_base_url: ClassVar[str] = ""
    default_model: ClassVar[str] = ""
    default_max_tokens: ClassVar[int] = 2048
    default_temperature: ClassVar[float] = 0.7
    temperature_range: ClassVar[tuple[float, float]] = (0.0, 2.0)
    requires_api_key: ClassVar[bool] = True
    _QUOTA_ERROR_TYPES: ClassVar[frozenset[str]] = frozenset()

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
    ):
        self._transport = transport
        self._timeout = timeout

    async def complete(
        self, profile: BackendProfile, request: CanonicalRequest
    ) -> CanonicalResponse:
        raise NotImplementedError

    def stream(
        self, profile: BackendProfile, request: CanonicalRequest
    ) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    def is_quota_error(self, exc: BaseException) -> bool:
        if isinstance(exc, ConfigurationError):
            return False
        if isinstance(exc, UpstreamError):
            if exc.status_code == 429:
                return True
            if exc.error_type:
                # a structured error code is authoritative when the backend sends one
                if exc.error_type.lower() in self._QUOTA_ERROR_TYPES:
                    return True
                if self._QUOTA_ERROR_TYPES and exc.error_type != "transport":
                    return False
            message = exc.message
        else:
            message = str(exc)
        lowered = message.lower()
        return any(keyword in lowered for keyword in _QUOTA_KEYWORDS)

    @staticmethod
    def estimate_tokens(content: Any) -> int:
        return estimate_tokens(content)

    def _api_key(self, profile: BackendProfile) -> str | None:
        key = profile.credentials.resolve()
        if key is None and self.requires_api_key:
            raise ConfigurationError(
                f"profile '{profile.id}' ({self.kind.value}) has no API key configured"
            )
        return key

    def _base_url(self, profile: BackendProfile) -> str:
        return (profile.base_url or self.default_base_url).strip().rstrip("/")

    def _model(self, profile: BackendProfile) -> str:
        return profile.model or self.default_model

    def _max_tokens(self, profile: BackendProfile, request: CanonicalRequest) -> int:
        if request.max_tokens is not None:
            return request.max_tokens
        if profile.max_tokens is not None:
            return profile.max_tokens
        return self.default_max_tokens

    def _temperature(self, profile: BackendProfile, request: CanonicalRequest) -> float:
        if request.temperature is not None:
            value = request.temperature
        elif profile.temperature is not None:
            value = profile.temperature
        else:
            value = self.default_temperature
        return clamp(float(value), self.temperature_range)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)


class HTTPProvider(BaseProvider):
    """Shared request/response plumbing for JSON-over-HTTP backends with SSE streams."""

    def _build_request(
        self, profile: BackendProfile, request: CanonicalRequest, *, stream: bool
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        raise NotImplementedError

    def _parse_response(
        self, profile: BackendProfile, data: Any
    ) -> CanonicalResponse:
        raise NotImplementedError

    def _stream_parser(self, profile: BackendProfile) -> StreamParser:
        raise NotImplementedError

    async def complete(
        self, profile: BackendProfile, request: CanonicalRequest
    ) -> CanonicalResponse:
        url, headers, payload = self._build_request(profile, request, stream=False)
        logger.debug("provider.request profile=%s kind=%s url=%s stream=false", profile.id, self.kind.value, url)
        async with self._client() as client:
            try:
                r = await client.post(url, headers=headers, json=payload)
            except httpx.HTTPError as exc:
                raise _transport_error(exc) from exc
        if r.status_code >= 400:
            raise upstream_error_from_response(r)
        try:
            data = r.json()
        except ValueError as exc:
            raise UpstreamError(r.status_code, "backend returned a non-JSON body") from exc
        return self._parse_response(profile, data)

    async def stream(
        self, profile: BackendProfile, request: CanonicalRequest
    ) -> AsyncIterator[StreamEvent]:
        url, headers, payload = self._build_request(profile, request, stream=True)
        logger.debug("provider.request profile=%s kind=%s url=%s stream=true", profile.id, self.kind.value, url)
        normalizer = StreamNormalizer(self._stream_parser(profile), source=profile.id)
        async with self._client() as client:
            try:
                async with client.stream("POST", url, headers=headers, json=payload) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise upstream_error_from_response(response)
                    async for event in normalizer.normalize(response.aiter_bytes()):
                        yield event
            except httpx.HTTPError as exc:
                raise _transport_error(exc) from exc


class DummyProvider(BaseProvider):
    kind = ProviderKind.DUMMY
    default_model = "dummy"
    requires_api_key = False

    async def complete(
        self, profile: BackendProfile, request: CanonicalRequest
    ) -> CanonicalResponse:
        # simple echo-ish behavior for smoke tests
        last_user = next(
            (m.text() for m in reversed(request.messages) if m.role == "user"), "ping"
        )
        content = f"dummy:{last_user}"
        return CanonicalResponse(
            content=content,
            usage=Usage(
                input_tokens=estimate_request_tokens(request),
                output_tokens=estimate_tokens(content),
            ),
            model=self._model(profile),
            stop_reason="stop",
        )

    async def stream(
        self, profile: BackendProfile, request: CanonicalRequest
    ) -> AsyncIterator[StreamEvent]:
        response = await self.complete(profile, request)
        yield TextEvent(response.content)
        yield UsageEvent(response.usage.input_tokens, response.usage.output_tokens)
        yield DoneEvent(response.stop_reason)


from .anthropic import AnthropicProvider, ClaudeCodeProvider
from .huggingface import HuggingFaceProvider
from .openai import (
    CerebrasProvider,
    FireworksProvider,
    GroqProvider,
    OpenAICompatProvider,
    XAIProvider,
)


class ProviderRegistry:
    _PROVIDER_FACTORIES: dict[ProviderKind, type[BaseProvider]] = {
        ProviderKind.OPENAI: OpenAICompatProvider,
        ProviderKind.GROQ: GroqProvider,
        ProviderKind.XAI: XAIProvider,
        ProviderKind.FIREWORKS: FireworksProvider,
        ProviderKind.CEREBRAS: CerebrasProvider,
        ProviderKind.ANTHROPIC: AnthropicProvider,
        ProviderKind.CLAUDE_CODE: ClaudeCodeProvider,
        ProviderKind.HUGGINGFACE: HuggingFaceProvider,
        ProviderKind.DUMMY: DummyProvider,
    }

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
        overrides: Dict[ProviderKind, BaseProvider] | None = None,
    ):
        self._transport = transport
        self._timeout = timeout
        self.providers: Dict[ProviderKind, BaseProvider] = dict(overrides or {})

    def get(self, kind: ProviderKind | str) -> BaseProvider:
        try:
            resolved = kind if isinstance(kind, ProviderKind) else ProviderKind(kind)
        except ValueError:
            raise ConfigurationError(f"Unknown provider kind '{kind}'") from None
        provider = self.providers.get(resolved)
        if provider is not None:
            return provider
        factory = self._PROVIDER_FACTORIES.get(resolved)
        if factory is None:
            raise ConfigurationError(f"No adapter bound to provider kind '{resolved.value}'")
        provider = factory(transport=self._transport, timeout=self._timeout)
        self.providers[resolved] = provider
        return provider


__all__ = [
    "BaseProvider",
    "HTTPProvider",
    "DummyProvider",
    "OpenAICompatProvider",
    "GroqProvider",
    "XAIProvider",
    "FireworksProvider",
    "CerebrasProvider",
    "AnthropicProvider",
    "ClaudeCodeProvider",
    "HuggingFaceProvider",
    "ProviderRegistry",
    "clamp",
    "upstream_error_from_response",
]

"""Quota-aware fallback dispatch across an ordered list of backend profiles.

A request starts at the shared rotation index and walks the profile list at
most once. Profiles whose local quota window is spent are skipped without a
backend call; failures rotate to the next profile and quota-shaped failures
also park the failing profile until its window resets.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any, Union

from .config import BackendProfile, DispatchSettings
from .errors import (
    AllProfilesExhaustedError,
    ConfigurationError,
    RelayError,
    RequestCancelledError,
    UpstreamError,
)
from .metrics import MetricsLogger
from .providers import BaseProvider, ProviderRegistry
from .quota import QuotaTracker
from .types import (
    CanonicalRequest,
    CanonicalResponse,
    Message,
    StreamEvent,
    TextEvent,
    UsageEvent,
    estimate_request_tokens,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

ProfileSource = Union[Sequence[BackendProfile], Callable[[], Sequence[BackendProfile]]]

_DEFAULT_SETTINGS = DispatchSettings()
_SELF_TEST_PROMPT = "Hello"


def _new_request_id() -> str:
    return uuid.uuid4().hex


def _log_attempt(
    level: int,
    *,
    outcome: str,
    req_id: str,
    profile: BackendProfile,
    attempt: int,
    detail: str | None = None,
) -> None:
    message = (
        f"dispatch.attempt outcome={outcome} req_id={req_id} profile={profile.id} "
        f"kind={profile.kind.value} attempt={attempt}"
    )
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


class FallbackOrchestrator:
    def __init__(
        self,
        profiles: ProfileSource,
        *,
        registry: ProviderRegistry | None = None,
        quota: QuotaTracker | None = None,
        settings: DispatchSettings | None = None,
        metrics: MetricsLogger | None = None,
    ):
        self._profiles = profiles
        self.registry = registry or ProviderRegistry()
        self.quota = quota or QuotaTracker()
        self._settings = settings
        self.metrics = metrics
        self._rotation_index = 0

    @property
    def rotation_index(self) -> int:
        return self._rotation_index

    @property
    def settings(self) -> DispatchSettings:
        if self._settings is not None:
            return self._settings
        store_settings = getattr(self._profiles, "settings", None)
        if isinstance(store_settings, DispatchSettings):
            return store_settings
        return _DEFAULT_SETTINGS

    def profiles(self) -> list[BackendProfile]:
        source = self._profiles
        current = source() if callable(source) else source
        return list(current)

    def _profiles_or_raise(self) -> list[BackendProfile]:
        profiles = self.profiles()
        if not profiles:
            raise ConfigurationError("no backend profiles configured")
        return profiles

    def _reset_period(self, profile: BackendProfile) -> float:
        return profile.quota_reset_period or self.settings.default_reset_period

    def _admit(self, profile: BackendProfile) -> bool:
        return self.quota.check_admission(
            profile.id, profile.quota_limit, self._reset_period(profile)
        )

    def _advance(self, index: int, count: int) -> None:
        self._rotation_index = (index + 1) % count

    def _deadline(self, timeout: float | None) -> float | None:
        if timeout is None:
            timeout = self.settings.request_timeout
        if timeout is None:
            return None
        return asyncio.get_running_loop().time() + timeout

    async def _write_metrics(
        self,
        *,
        req_id: str,
        profile: BackendProfile,
        outcome: str,
        attempt: int,
        stream: bool,
        latency_ms: int | None = None,
        tokens: int | None = None,
        error: str | None = None,
    ) -> None:
        if self.metrics is None:
            return
        record: dict[str, Any] = {
            "ts": time.time(),
            "req_id": req_id,
            "profile": profile.id,
            "kind": profile.kind.value,
            "outcome": outcome,
            "attempt": attempt,
            "stream": stream,
            "latency_ms": latency_ms,
        }
        if tokens is not None:
            record["tokens"] = tokens
        if error is not None:
            record["error"] = error
        await self.metrics.write(record)

    async def _record_failure(
        self,
        exc: Exception,
        *,
        adapter: BaseProvider | None,
        req_id: str,
        profile: BackendProfile,
        attempt: int,
        stream: bool,
        started: float,
    ) -> None:
        quota_hit = adapter is not None and adapter.is_quota_error(exc)
        if quota_hit:
            self.quota.mark_exhausted(profile.id, self._reset_period(profile))
        detail = f"{exc.__class__.__name__}: {exc}"
        if quota_hit:
            detail = f"quota {detail}"
        _log_attempt(
            logging.WARNING,
            outcome="failed",
            req_id=req_id,
            profile=profile,
            attempt=attempt,
            detail=detail,
        )
        await self._write_metrics(
            req_id=req_id,
            profile=profile,
            outcome="failed",
            attempt=attempt,
            stream=stream,
            latency_ms=int((time.perf_counter() - started) * 1000),
            error=str(exc),
        )

    async def _skip(self, *, req_id: str, profile: BackendProfile, attempt: int, stream: bool) -> None:
        _log_attempt(
            logging.WARNING,
            outcome="skipped",
            req_id=req_id,
            profile=profile,
            attempt=attempt,
            detail="quota window spent",
        )
        await self._write_metrics(
            req_id=req_id, profile=profile, outcome="skipped", attempt=attempt, stream=stream
        )

    def _exhausted(self, last_error: BaseException | None, attempts: int, req_id: str) -> AllProfilesExhaustedError:
        error = AllProfilesExhaustedError(last_error, attempts=attempts)
        logger.error("dispatch.exhausted req_id=%s attempts=%d detail=%s", req_id, attempts, error)
        return error

    async def _invoke(
        self,
        call: Awaitable[CanonicalResponse],
        deadline: float | None,
    ) -> CanonicalResponse:
        if deadline is None:
            return await call
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            # the coroutine was never scheduled
            close = getattr(call, "close", None)
            if close is not None:
                close()
            raise RequestCancelledError("request deadline exceeded")
        try:
            return await asyncio.wait_for(call, remaining)
        except asyncio.TimeoutError as exc:
            raise RequestCancelledError("request deadline exceeded") from exc

    async def dispatch(
        self,
        request: CanonicalRequest,
        *,
        timeout: float | None = None,
        request_id: str | None = None,
    ) -> tuple[BackendProfile, CanonicalResponse]:
        """Run one non-streaming request and return the serving profile with its response."""
        req_id = request_id or _new_request_id()
        profiles = self._profiles_or_raise()
        deadline = self._deadline(timeout)
        count = len(profiles)
        start = self._rotation_index % count
        last_error: BaseException | None = None
        for attempt in range(1, count + 1):
            index = (start + attempt - 1) % count
            profile = profiles[index]
            if not self._admit(profile):
                await self._skip(req_id=req_id, profile=profile, attempt=attempt, stream=False)
                self._advance(index, count)
                continue
            _log_attempt(logging.DEBUG, outcome="admitted", req_id=req_id, profile=profile, attempt=attempt)
            started = time.perf_counter()
            adapter: BaseProvider | None = None
            try:
                adapter = self.registry.get(profile.kind)
                response = await self._invoke(adapter.complete(profile, request), deadline)
            except RequestCancelledError:
                raise
            except Exception as exc:
                last_error = exc
                await self._record_failure(
                    exc,
                    adapter=adapter,
                    req_id=req_id,
                    profile=profile,
                    attempt=attempt,
                    stream=False,
                    started=started,
                )
                self._advance(index, count)
                continue
            tokens = response.usage.total_tokens
            self.quota.record_usage(profile.id, 1, tokens)
            self._advance(index, count)
            _log_attempt(logging.INFO, outcome="succeeded", req_id=req_id, profile=profile, attempt=attempt)
            await self._write_metrics(
                req_id=req_id,
                profile=profile,
                outcome="succeeded",
                attempt=attempt,
                stream=False,
                latency_ms=int((time.perf_counter() - started) * 1000),
                tokens=tokens,
            )
            return profile, response
        raise self._exhausted(last_error, count, req_id)

    async def complete(
        self,
        request: CanonicalRequest,
        *,
        timeout: float | None = None,
        request_id: str | None = None,
    ) -> CanonicalResponse:
        _, response = await self.dispatch(request, timeout=timeout, request_id=request_id)
        return response

    def stream(
        self,
        request: CanonicalRequest,
        *,
        timeout: float | None = None,
        request_id: str | None = None,
    ) -> "DispatchStream":
        return DispatchStream(
            self,
            request,
            timeout=timeout,
            request_id=request_id or _new_request_id(),
        )

    async def _produce(self, stream: "DispatchStream") -> None:
        request = stream.request
        req_id = stream.request_id
        put = stream._queue.put
        profiles = self._profiles_or_raise()
        count = len(profiles)
        start = self._rotation_index % count
        last_error: BaseException | None = None
        for attempt in range(1, count + 1):
            stream.attempts = attempt
            index = (start + attempt - 1) % count
            profile = profiles[index]
            if not self._admit(profile):
                await self._skip(req_id=req_id, profile=profile, attempt=attempt, stream=True)
                self._advance(index, count)
                continue
            _log_attempt(logging.DEBUG, outcome="admitted", req_id=req_id, profile=profile, attempt=attempt)
            started = time.perf_counter()
            adapter: BaseProvider | None = None
            pending: list[StreamEvent] = []
            emitted: list[str] = []
            forwarded = False
            last_usage: UsageEvent | None = None
            try:
                adapter = self.registry.get(profile.kind)
                events = adapter.stream(profile, request)
                try:
                    async for event in events:
                        if isinstance(event, UsageEvent):
                            last_usage = event
                        elif isinstance(event, TextEvent):
                            emitted.append(event.content)
                        if forwarded:
                            await put(("event", event))
                            continue
                        if not isinstance(event, TextEvent):
                            # nothing is forwarded until the first text event commits this profile
                            pending.append(event)
                            continue
                        forwarded = True
                        stream.profile_id = profile.id
                        for held in pending:
                            await put(("event", held))
                        pending.clear()
                        await put(("event", event))
                finally:
                    aclose = getattr(events, "aclose", None)
                    if aclose is not None:
                        await aclose()
            except Exception as exc:
                last_error = exc
                if not isinstance(exc, ConfigurationError):
                    self.quota.record_usage(
                        profile.id, 1, last_usage.total_tokens if last_usage is not None else 0
                    )
                await self._record_failure(
                    exc,
                    adapter=adapter,
                    req_id=req_id,
                    profile=profile,
                    attempt=attempt,
                    stream=True,
                    started=started,
                )
                self._advance(index, count)
                if forwarded:
                    if not isinstance(exc, RelayError):
                        detail = str(exc) or exc.__class__.__name__
                        exc = UpstreamError(None, f"stream interrupted: {detail}")
                    await put(("error", exc))
                    return
                continue
            if last_usage is not None:
                tokens = last_usage.total_tokens
            else:
                tokens = estimate_request_tokens(request) + estimate_tokens("".join(emitted))
            self.quota.record_usage(profile.id, 1, tokens)
            self._advance(index, count)
            stream.profile_id = profile.id
            for held in pending:
                await put(("event", held))
            _log_attempt(logging.INFO, outcome="succeeded", req_id=req_id, profile=profile, attempt=attempt)
            await self._write_metrics(
                req_id=req_id,
                profile=profile,
                outcome="succeeded",
                attempt=attempt,
                stream=True,
                latency_ms=int((time.perf_counter() - started) * 1000),
                tokens=tokens,
            )
            await put(("end", None))
            return
        await put(("error", self._exhausted(last_error, count, req_id)))

    async def self_test(self) -> dict[str, Any]:
        """Send a tiny prompt through the normal dispatch path."""
        request = CanonicalRequest(
            messages=[Message(role="user", content=_SELF_TEST_PROMPT)],
            max_tokens=10,
        )
        try:
            profile, response = await self.dispatch(request)
        except RelayError as exc:
            return {"success": False, "error": str(exc)}
        return {
            "success": True,
            "message": f"profile {profile.id} answered with model {response.model}",
            "profile": profile.id,
        }


class DispatchStream:
    """Pull side of a streamed dispatch.

    A producer task runs the fallback loop and feeds a bounded queue; this
    object hands events to the consumer. Iterating past the end raises the
    terminal error, if any. ``cancel``/``aclose`` stop the producer and close
    the backend stream without recording usage for the interrupted attempt.
    """

    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        request: CanonicalRequest,
        *,
        timeout: float | None,
        request_id: str,
    ):
        self._orchestrator = orchestrator
        self.request = request
        self.request_id = request_id
        self.profile_id: str | None = None
        self.attempts = 0
        self._timeout = timeout
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(
            maxsize=orchestrator.settings.stream_buffer
        )
        self._task: asyncio.Task[None] | None = None
        self._deadline: float | None = None
        self._finished = False
        self._cancelled = False

    def _ensure_started(self) -> asyncio.Task[None]:
        if self._task is None:
            self._deadline = self._orchestrator._deadline(self._timeout)
            self._task = asyncio.create_task(self._run())
        return self._task

    async def _run(self) -> None:
        try:
            await self._orchestrator._produce(self)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._queue.put(("error", exc))

    async def _stop_producer(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _next_item(self) -> tuple[str, Any]:
        if self._deadline is None:
            return await self._queue.get()
        remaining = self._deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise asyncio.TimeoutError
        return await asyncio.wait_for(self._queue.get(), remaining)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        # an abandoned loop is closed by the event loop's async generator finalizer
        try:
            while True:
                try:
                    event = await self.__anext__()
                except StopAsyncIteration:
                    return
                yield event
        finally:
            await self.aclose()

    async def __anext__(self) -> StreamEvent:
        if self._cancelled:
            raise RequestCancelledError("stream cancelled")
        if self._finished:
            raise StopAsyncIteration
        task = self._ensure_started()
        try:
            kind, payload = await self._next_item()
        except asyncio.TimeoutError as exc:
            await self._abort()
            raise RequestCancelledError("stream deadline exceeded") from exc
        except asyncio.CancelledError:
            await self._abort()
            raise
        if kind == "event":
            return payload
        if kind == "cancelled":
            raise RequestCancelledError("stream cancelled")
        self._finished = True
        await task
        if kind == "error":
            raise payload
        raise StopAsyncIteration

    async def _abort(self) -> None:
        self._cancelled = True
        self._finished = True
        await self._stop_producer()

    async def cancel(self) -> None:
        if self._finished and not self._cancelled:
            return
        await self._abort()
        # wake a consumer that is blocked on the queue
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(("cancelled", None))

    async def aclose(self) -> None:
        await self.cancel()

    async def __aenter__(self) -> "DispatchStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def collect(self) -> list[StreamEvent]:
        return [event async for event in self]

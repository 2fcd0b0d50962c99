import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse, StreamingResponse

from .config import ProfileStore
from .errors import (
    AllProfilesExhaustedError,
    ConfigurationError,
    RelayError,
    RequestCancelledError,
    UpstreamError,
)
from .metrics import MetricsLogger
from .orchestrator import DispatchStream, FallbackOrchestrator
from .types import CanonicalRequest

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
UNAVAILABLE_MESSAGE = "no AI provider currently available"
DONE_FRAME = b"data: [DONE]\n\n"


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


LOG_LEVEL = os.environ.get("RELAY_LOG_LEVEL", "INFO").strip().upper() or "INFO"
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

CONFIG_DIR = os.environ.get(
    "RELAY_CONFIG_DIR",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config"),
)
USE_DUMMY: bool = _env_var_as_bool("RELAY_USE_DUMMY")
CONFIG_REFRESH_INTERVAL: float = _env_var_as_float("RELAY_CONFIG_REFRESH_INTERVAL", default=30.0)

app = FastAPI(title="llm-relay")


def _format_timestamp(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _build_metrics(store: ProfileStore) -> MetricsLogger | None:
    metrics_dir = store.settings.metrics_dir
    if not metrics_dir:
        return None
    if not os.path.isabs(metrics_dir):
        metrics_dir = os.path.join(CONFIG_DIR, metrics_dir)
    return MetricsLogger(metrics_dir)


store = ProfileStore(CONFIG_DIR, use_dummy=USE_DUMMY)
metrics = _build_metrics(store)
orchestrator = FallbackOrchestrator(store, metrics=metrics)
config_last_reload_at: float = time.time()

_config_refresh_task: asyncio.Task[None] | None = None


def reload_configuration() -> bool:
    global config_last_reload_at
    changed = store.refresh()
    if changed:
        config_last_reload_at = time.time()
        logger.info(
            "config.reload dir=%s profiles=%d", CONFIG_DIR, len(store.profiles)
        )
    return changed


async def _config_refresh_loop() -> None:
    while True:
        try:
            reload_configuration()
        except ConfigurationError as exc:
            # keep serving the last good profile list
            logger.error("config.reload_failed dir=%s detail=%s", CONFIG_DIR, exc)
        await asyncio.sleep(CONFIG_REFRESH_INTERVAL if CONFIG_REFRESH_INTERVAL > 0 else 1.0)


@app.on_event("startup")
async def _start_config_refresh() -> None:
    global _config_refresh_task
    if _config_refresh_task is None or _config_refresh_task.done():
        _config_refresh_task = asyncio.create_task(_config_refresh_loop())


@app.on_event("shutdown")
async def _stop_config_refresh() -> None:
    global _config_refresh_task
    task = _config_refresh_task
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    _config_refresh_task = None


def _make_response_headers(
    *, req_id: str, profile: str | None, attempts: int | None = None
) -> dict[str, str]:
    headers = {
        "x-relay-request-id": req_id,
        "x-relay-profile": profile or "unknown",
    }
    if attempts is not None:
        headers["x-relay-attempts"] = str(max(attempts, 0))
    return headers


def _error_details(exc: Exception) -> tuple[int, str, str]:
    if isinstance(exc, AllProfilesExhaustedError):
        return 503, "all_profiles_exhausted", UNAVAILABLE_MESSAGE
    if isinstance(exc, ConfigurationError):
        return 500, "configuration_error", str(exc)
    if isinstance(exc, RequestCancelledError):
        return 504, "request_cancelled", str(exc) or "request cancelled"
    if isinstance(exc, UpstreamError):
        return 502, "upstream_error", str(exc)
    return 500, "internal_error", "internal error"


def _make_error_body(exc: Exception) -> tuple[int, dict[str, Any]]:
    status_code, error_type, message = _error_details(exc)
    payload: dict[str, Any] = {"message": message, "type": error_type}
    if isinstance(exc, AllProfilesExhaustedError):
        payload["attempts"] = exc.attempts
    if isinstance(exc, UpstreamError) and exc.retry_after is not None:
        payload["retry_after"] = exc.retry_after
    return status_code, {"error": payload}


def _error_response(
    exc: Exception, *, req_id: str, profile: str | None = None, attempts: int | None = None
) -> JSONResponse:
    status_code, body = _make_error_body(exc)
    return JSONResponse(
        body,
        status_code=status_code,
        headers=_make_response_headers(req_id=req_id, profile=profile, attempts=attempts),
    )


def _encode_event(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {
        "status": "ok",
        "profiles": [profile.id for profile in store.profiles],
        "config": {
            "dir": os.path.basename(os.path.normpath(CONFIG_DIR)),
            "dummy": USE_DUMMY,
            "last_reload_at": _format_timestamp(config_last_reload_at),
        },
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    body = metrics.render_prometheus() if metrics is not None else ""
    return Response(body.encode("utf-8"), media_type=PROM_CONTENT_TYPE)


@app.get("/v1/quota")
async def quota_snapshot() -> dict[str, Any]:
    snapshot = orchestrator.quota.snapshot()
    entries: list[dict[str, Any]] = []
    for profile in store.profiles:
        usage = snapshot.get(profile.id)
        data = asdict(usage) if usage is not None else {
            "request_count": 0,
            "token_count": 0,
            "window_reset_at": None,
            "exhausted": False,
        }
        data["window_reset_at"] = _format_timestamp(data["window_reset_at"])
        entries.append({"id": profile.id, "kind": profile.kind.value, **data})
    return {"rotation_index": orchestrator.rotation_index, "profiles": entries}


@app.post("/v1/self-test")
async def self_test() -> dict[str, Any]:
    return await orchestrator.self_test()


@app.post("/v1/complete")
async def complete(body: CanonicalRequest):
    req_id = uuid.uuid4().hex
    try:
        profile, response = await orchestrator.dispatch(body, request_id=req_id)
    except RelayError as exc:
        return _error_response(exc, req_id=req_id, attempts=getattr(exc, "attempts", None))
    return JSONResponse(
        response.model_dump(),
        headers=_make_response_headers(req_id=req_id, profile=profile.id),
    )


@app.post("/v1/stream")
async def stream_endpoint(body: CanonicalRequest):
    stream: DispatchStream = orchestrator.stream(body)
    req_id = stream.request_id
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = None
    except Exception as exc:
        await stream.aclose()
        if not isinstance(exc, RelayError):
            logger.exception("stream.failed req_id=%s", req_id)
        return _error_response(exc, req_id=req_id, attempts=stream.attempts)

    async def event_source() -> Any:
        try:
            if first is None:
                yield DONE_FRAME
                return
            yield _encode_event(first.to_dict())
            try:
                async for event in stream:
                    yield _encode_event(event.to_dict())
            except Exception as exc:
                _, error_body = _make_error_body(exc)
                frame = dict(error_body["error"])
                frame["error_type"] = frame.pop("type")
                frame["type"] = "error"
                logger.warning("stream.aborted req_id=%s detail=%s", req_id, exc)
                yield _encode_event(frame)
                return
            yield DONE_FRAME
        finally:
            await stream.aclose()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers=_make_response_headers(req_id=req_id, profile=stream.profile_id, attempts=stream.attempts),
    )

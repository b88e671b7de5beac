"""HTTP endpoints for health, metrics and session control."""

import logging
import threading
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from uvicorn.config import LOGGING_CONFIG

from copilot_server.backend.runtime import ApplicationRuntime
from copilot_server.errors import CopilotError, http_payload_for, http_status_for

_ACCESS_LOG_IGNORED_PATHS = frozenset({"/metrics", "/metrics.json", "/health"})
LOGGER = logging.getLogger("copilot_server.http_server")


class _AccessLogPathFilter(logging.Filter):
    """Filter out noisy access logs for internal endpoints."""

    def __init__(self, ignored_paths: Tuple[str, ...]) -> None:
        super().__init__()
        self._ignored_paths = set(ignored_paths)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, tuple) and len(record.args) >= 3:
            path = record.args[2]
            if path in self._ignored_paths:
                return False
        return True


def _build_uvicorn_log_config() -> Dict[str, Any]:
    log_config = deepcopy(LOGGING_CONFIG)
    log_config.setdefault("filters", {})
    log_config["filters"]["ignore_internal_endpoints"] = {
        "()": _AccessLogPathFilter,
        "ignored_paths": tuple(sorted(_ACCESS_LOG_IGNORED_PATHS)),
    }
    access_handler = log_config["handlers"].get("access", {})
    access_filters = access_handler.get("filters", [])
    access_handler["filters"] = [*access_filters, "ignore_internal_endpoints"]
    log_config["handlers"]["access"] = access_handler
    return log_config


class StartSessionRequest(BaseModel):
    """Request body for starting (or re-arming) a session."""

    profile: Optional[str] = None
    custom_prompt: Optional[str] = None
    resume_context: Optional[str] = None
    language: Optional[str] = None
    history_enabled: Optional[bool] = None
    silence_timeout_sec: Optional[float] = None


class ManualModeRequest(BaseModel):
    enabled: bool


class TextMessageRequest(BaseModel):
    text: str
    condensed_text: Optional[str] = None


class SettingsUpdateRequest(BaseModel):
    values: Dict[str, str]


@dataclass
class HttpServerHandle:
    """Handle for the background HTTP server thread."""

    server: uvicorn.Server
    thread: threading.Thread

    def stop(self, timeout: Optional[float] = None) -> None:
        if self.thread.is_alive():
            self.server.should_exit = True
            self.thread.join(timeout=timeout)


def _sanitize_metric_name(value: str) -> str:
    sanitized = []
    for idx, ch in enumerate(value):
        if ch.isalnum() or ch == "_":
            sanitized.append(ch)
        else:
            sanitized.append("_")
        if idx == 0 and sanitized[-1].isdigit():
            sanitized.insert(0, "m")
    return "".join(sanitized) or "metric"


def _flatten_metrics(payload: Dict[str, Any]) -> Dict[str, float]:
    flat: Dict[str, float] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, (int, float, bool)):
            flat[_sanitize_metric_name(key)] = float(value)
        elif isinstance(value, dict):
            for sub_key, sub_val in value.items():
                if isinstance(sub_val, (int, float, bool)):
                    metric_key = _sanitize_metric_name(f"{key}_{sub_key}")
                    flat[metric_key] = float(sub_val)
    return flat


def _prometheus_text(payload: Dict[str, Any]) -> str:
    flat = _flatten_metrics(payload)
    lines: List[str] = []
    for key in sorted(flat.keys()):
        metric_name = f"copilot_{key}"
        lines.append(f"# HELP {metric_name} Server metric '{key}' exposed as a gauge.")
        lines.append(f"# TYPE {metric_name} gauge")
        lines.append(f"{metric_name} {flat[key]}")
    return "\n".join(lines) + "\n"


def build_http_app(runtime: ApplicationRuntime, server_state: Dict[str, bool]) -> FastAPI:
    """Create the FastAPI app for health, metrics and session control."""
    app = FastAPI()
    metrics = runtime.metrics
    service = runtime.service

    @app.exception_handler(CopilotError)
    async def copilot_error_handler(_request: Request, exc: CopilotError) -> JSONResponse:
        return JSONResponse(
            http_payload_for(exc.code, exc.detail),
            status_code=http_status_for(exc.code),
        )

    @app.get("/metrics")
    def metrics_endpoint() -> Response:
        text = _prometheus_text(metrics.snapshot())
        return Response(content=text, media_type="text/plain; version=0.0.4")

    @app.get("/metrics.json")
    def metrics_json_endpoint() -> JSONResponse:
        return JSONResponse(metrics.snapshot(), status_code=200)

    @app.get("/health")
    def health_endpoint() -> JSONResponse:
        snapshot = runtime.health_snapshot()
        snapshot["ws_running"] = server_state.get("ws_running", False)
        healthy = snapshot["credentials_configured"]
        status = 200 if healthy else 503
        payload = {"status": "ok" if healthy else "error", **snapshot}
        return JSONResponse(payload, status_code=status)

    @app.post("/sessions/{session_id}/start")
    def start_session_endpoint(
        session_id: str, req: Optional[StartSessionRequest] = None
    ) -> JSONResponse:
        params = req.model_dump(exclude_none=True) if req is not None else {}
        return JSONResponse(service.start_session(session_id, **params))

    @app.post("/sessions/{session_id}/stop")
    def stop_session_endpoint(session_id: str) -> JSONResponse:
        cancelled = service.stop_session(session_id)
        return JSONResponse({"status": "stopped", "cancelled_inflight": cancelled})

    @app.post("/sessions/{session_id}/new")
    def new_session_endpoint(session_id: str) -> JSONResponse:
        return JSONResponse(service.new_session(session_id))

    @app.post("/sessions/{session_id}/close")
    def close_session_endpoint(session_id: str) -> JSONResponse:
        return JSONResponse({"closed": service.close_session(session_id)})

    @app.post("/sessions/{session_id}/manual")
    def manual_mode_endpoint(session_id: str, req: ManualModeRequest) -> JSONResponse:
        return JSONResponse({"manual_mode": service.set_manual_mode(session_id, req.enabled)})

    @app.post("/sessions/{session_id}/trigger")
    def trigger_endpoint(session_id: str) -> JSONResponse:
        future = service.trigger_manual_flush(session_id)
        return JSONResponse({"triggered": future is not None})

    @app.post("/sessions/{session_id}/text")
    def text_message_endpoint(session_id: str, req: TextMessageRequest) -> JSONResponse:
        service.ingest_text_message(session_id, req.text, req.condensed_text)
        return JSONResponse({"status": "accepted"}, status_code=202)

    @app.post("/sessions/{session_id}/audio")
    async def audio_frame_endpoint(session_id: str, request: Request) -> JSONResponse:
        frame = await request.body()
        decision = service.ingest_audio_frame(session_id, frame)
        return JSONResponse(
            {
                "buffered": decision.buffered,
                "barge_in": decision.barge_in,
                "segment_flushed": decision.segment is not None,
            }
        )

    @app.get("/sessions/{session_id}")
    def session_snapshot_endpoint(session_id: str) -> JSONResponse:
        return JSONResponse(service.session_snapshot(session_id))

    @app.put("/settings")
    def settings_endpoint(req: SettingsUpdateRequest) -> JSONResponse:
        runtime.settings_provider.update(req.values)
        LOGGER.info("Updated settings: %s", ", ".join(sorted(req.values)))
        return JSONResponse({"updated": sorted(req.values)})

    return app


def start_http_server(
    runtime: ApplicationRuntime,
    server_state: Dict[str, bool],
    host: str,
    port: int,
) -> HttpServerHandle:
    """Start the FastAPI app in a background thread."""
    app = build_http_app(runtime, server_state)
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
        log_config=_build_uvicorn_log_config(),
    )
    server = uvicorn.Server(config)

    def run_server() -> None:
        server.run()

    thread = threading.Thread(target=run_server, daemon=True)
    thread.start()
    return HttpServerHandle(server=server, thread=thread)

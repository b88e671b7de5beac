"""WebSocket bridge for live audio clients."""

from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from copilot_server.backend.application.session_manager import SessionParams
from copilot_server.backend.runtime import ApplicationRuntime
from copilot_server.errors import CopilotError, ErrorCode, http_payload_for
from copilot_server.utils.logger import clear_session_id, set_session_id

LOGGER = logging.getLogger("copilot_server.ws_server")

_SESSION_PARAM_KEYS = frozenset(SessionParams.__dataclass_fields__)


def _parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return default


def _session_params(payload: Dict[str, Any]) -> Dict[str, Any]:
    params = {
        key: value
        for key, value in payload.items()
        if key in _SESSION_PARAM_KEYS and value is not None
    }
    if "history_enabled" in params:
        params["history_enabled"] = _parse_bool(params["history_enabled"])
    if "silence_timeout_sec" in params:
        params["silence_timeout_sec"] = float(params["silence_timeout_sec"])
    return params


class _SessionWorker:
    """Applies frames and control messages for one connection, in order.

    Runs on its own thread so the event loop never waits on the session lock.
    Replies and errors are pushed back to the loop through ``emit``.
    """

    def __init__(self, runtime: ApplicationRuntime, session_id: str, emit) -> None:
        self._service = runtime.service
        self._session_id = session_id
        self._emit = emit
        self._inbox: queue.Queue[Optional[Tuple[str, Any]]] = queue.Queue()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def put_frame(self, frame: bytes) -> None:
        self._inbox.put(("frame", frame))

    def put_control(self, data: Dict[str, Any]) -> None:
        self._inbox.put(("control", data))

    def finish(self) -> None:
        self._inbox.put(None)

    def _run(self) -> None:
        token = set_session_id(self._session_id)
        try:
            while True:
                item = self._inbox.get()
                if item is None:
                    break
                kind, payload = item
                try:
                    if kind == "frame":
                        self._service.ingest_audio_frame(self._session_id, payload)
                    else:
                        self._handle_control(payload)
                except CopilotError as exc:
                    self._emit(("event", {"type": "error", **http_payload_for(exc.code, exc.detail)}))
                except Exception:
                    LOGGER.exception("WebSocket message handling failed")
                    self._emit(("event", {"type": "error", **http_payload_for(ErrorCode.UNEXPECTED)}))
        finally:
            clear_session_id(token)
            self._emit(("done", None))

    def _handle_control(self, data: Dict[str, Any]) -> None:
        service = self._service
        session_id = self._session_id
        action = str(data.get("type") or "")
        reply: Dict[str, Any] = {"type": "ack", "action": action}
        if action == "text":
            service.ingest_text_message(
                session_id, data.get("text") or "", data.get("condensed_text")
            )
        elif action == "manual":
            reply["manual_mode"] = service.set_manual_mode(
                session_id, _parse_bool(data.get("enabled"))
            )
        elif action == "trigger":
            reply["triggered"] = service.trigger_manual_flush(session_id) is not None
        elif action == "stop":
            reply["cancelled_inflight"] = service.stop_session(session_id)
        elif action == "start":
            service.start_session(session_id, **_session_params(data))
        elif action == "new":
            service.new_session(session_id)
        else:
            LOGGER.warning("Unknown WebSocket control message: %s", action)
            reply = {"type": "error", "message": f"unknown message type '{action}'"}
        self._emit(("event", reply))


def build_ws_app(runtime: ApplicationRuntime) -> FastAPI:
    app = FastAPI()
    service = runtime.service
    hub = runtime.renderer

    @app.websocket("/ws/session")
    async def websocket_session(websocket: WebSocket) -> None:
        await websocket.accept()
        try:
            start_payload = await websocket.receive_json()
        except Exception:
            await websocket.close(code=1003)
            return

        if isinstance(start_payload, dict) and start_payload.get("type") == "start":
            payload = start_payload.get("data") or start_payload
        else:
            payload = start_payload if isinstance(start_payload, dict) else {}

        session_id = str(payload.get("session_id") or uuid.uuid4().hex)
        close_on_disconnect = _parse_bool(payload.get("close_on_disconnect"), True)
        try:
            snapshot = service.start_session(session_id, **_session_params(payload))
            if "manual_mode" in payload:
                service.set_manual_mode(session_id, _parse_bool(payload["manual_mode"]))
        except CopilotError as exc:
            await websocket.send_json({"type": "error", **http_payload_for(exc.code, exc.detail)})
            await websocket.close(code=4400)
            return

        await websocket.send_json(
            {
                "type": "session",
                "session_id": session_id,
                "profile": snapshot.get("profile"),
                "manual_mode": service.session_snapshot(session_id)["manual_mode"],
            }
        )

        outbox: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        loop = asyncio.get_running_loop()

        def emit(item: tuple[str, Any]) -> None:
            try:
                loop.call_soon_threadsafe(outbox.put_nowait, item)
            except RuntimeError:
                LOGGER.debug("Event loop closed; dropping %s", item[0])

        unsubscribe = hub.subscribe(session_id, lambda event: emit(("event", event)))
        worker = _SessionWorker(runtime, session_id, emit)
        worker.start()

        async def recv_messages() -> None:
            try:
                while True:
                    message = await websocket.receive()
                    if message.get("type") == "websocket.disconnect":
                        break
                    if message.get("bytes"):
                        worker.put_frame(message["bytes"])
                        continue
                    if message.get("text"):
                        try:
                            data = json.loads(message["text"])
                        except json.JSONDecodeError:
                            continue
                        if not isinstance(data, dict):
                            continue
                        if data.get("type") == "end":
                            break
                        worker.put_control(data)
            except WebSocketDisconnect:
                pass
            finally:
                worker.finish()

        async def send_events() -> None:
            while True:
                kind, event = await outbox.get()
                if kind == "done":
                    try:
                        await websocket.send_json({"type": "done", "session_id": session_id})
                    except (WebSocketDisconnect, RuntimeError):
                        pass
                    break
                try:
                    await websocket.send_json(event)
                except (WebSocketDisconnect, RuntimeError):
                    break

        try:
            await asyncio.gather(recv_messages(), send_events())
        finally:
            unsubscribe()
            if close_on_disconnect:
                service.close_session(session_id)
        try:
            await websocket.close()
        except RuntimeError:
            pass

    return app


@dataclass
class WebSocketServerHandle:
    """Handle for the background WebSocket server."""

    server: uvicorn.Server
    thread: threading.Thread

    def stop(self, timeout: Optional[float] = None) -> None:
        if self.thread.is_alive():
            self.server.should_exit = True
            self.thread.join(timeout=timeout)


def start_ws_server(
    runtime: ApplicationRuntime,
    host: str,
    port: int,
) -> WebSocketServerHandle:
    """Start the WebSocket app in a background thread."""
    app = build_ws_app(runtime)
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    return WebSocketServerHandle(server=server, thread=thread)


__all__ = [
    "WebSocketServerHandle",
    "build_ws_app",
    "start_ws_server",
]

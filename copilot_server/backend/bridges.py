"""Interfaces to the display surface, turn persistence and user settings."""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol

from copilot_server.utils.logger import LOGGER, TRANSCRIPT_LOGGER

RendererEvent = Dict[str, Optional[str]]
Subscriber = Callable[[RendererEvent], None]


class RendererBridge(Protocol):
    """Fire-and-forget notifications to the display surface."""

    def send_status(self, text: str, session_id: Optional[str] = None) -> None: ...

    def send_token(self, session_id: str, text: str) -> None: ...

    def send_final_answer(self, session_id: str, text: str) -> None: ...

    def send_transcript_partial(self, session_id: str, text: str) -> None: ...


class PersistenceBridge(Protocol):
    def save_turn(self, session_id: str, user_text: str, answer_text: str) -> None: ...


class SettingsProvider(Protocol):
    def get_setting(self, key: str, default: str = "") -> str: ...


class LoggingRenderer:
    """Renderer that writes events to the logs; used when nothing is attached."""

    def send_status(self, text: str, session_id: Optional[str] = None) -> None:
        LOGGER.info("status: %s", text)

    def send_token(self, session_id: str, text: str) -> None:
        LOGGER.trace("token: %d chars", len(text))  # type: ignore[attr-defined]

    def send_final_answer(self, session_id: str, text: str) -> None:
        LOGGER.info("final answer: %d chars", len(text))
        TRANSCRIPT_LOGGER.info("answer: %s", text)

    def send_transcript_partial(self, session_id: str, text: str) -> None:
        LOGGER.debug("partial transcript: %d chars", len(text))


class RendererHub:
    """Fans renderer events out to per-session subscribers.

    Status messages without a session id go to every subscriber. Subscriber
    failures are logged and never reach the pipeline.
    """

    def __init__(self, fallback: Optional[RendererBridge] = None) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._fallback = fallback or LoggingRenderer()

    def subscribe(self, session_id: str, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(session_id, []).append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                subscribers = self._subscribers.get(session_id, [])
                if subscriber in subscribers:
                    subscribers.remove(subscriber)
                if not subscribers:
                    self._subscribers.pop(session_id, None)

        return _unsubscribe

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def _targets(self, session_id: Optional[str]) -> List[Subscriber]:
        with self._lock:
            if session_id is None:
                return [sub for subs in self._subscribers.values() for sub in subs]
            return list(self._subscribers.get(session_id, []))

    def _publish(self, session_id: Optional[str], event: RendererEvent) -> None:
        for subscriber in self._targets(session_id):
            try:
                subscriber(event)
            except Exception:
                LOGGER.exception("Renderer subscriber failed")

    def send_status(self, text: str, session_id: Optional[str] = None) -> None:
        self._fallback.send_status(text, session_id)
        self._publish(session_id, {"type": "status", "session_id": session_id, "text": text})

    def send_token(self, session_id: str, text: str) -> None:
        self._fallback.send_token(session_id, text)
        self._publish(session_id, {"type": "token", "session_id": session_id, "text": text})

    def send_final_answer(self, session_id: str, text: str) -> None:
        self._fallback.send_final_answer(session_id, text)
        self._publish(session_id, {"type": "final", "session_id": session_id, "text": text})

    def send_transcript_partial(self, session_id: str, text: str) -> None:
        self._fallback.send_transcript_partial(session_id, text)
        self._publish(
            session_id, {"type": "partial", "session_id": session_id, "text": text}
        )


class NullPersistence:
    def save_turn(self, session_id: str, user_text: str, answer_text: str) -> None:
        return None


class JsonlPersistence:
    """Appends one JSON line per completed turn."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def save_turn(self, session_id: str, user_text: str, answer_text: str) -> None:
        record = {
            "session_id": session_id,
            "user_text": user_text,
            "answer_text": answer_text,
            "saved_at": time.time(),
        }
        line = json.dumps(record, ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")


class StaticSettings:
    """Settings from configuration, updatable at runtime."""

    def __init__(self, values: Optional[Mapping[str, str]] = None) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, str] = dict(values or {})

    def get_setting(self, key: str, default: str = "") -> str:
        with self._lock:
            value = self._values.get(key)
        if value is None or value == "":
            return default
        return value

    def update(self, values: Mapping[str, str]) -> None:
        with self._lock:
            for key, value in values.items():
                self._values[str(key)] = str(value)


__all__ = [
    "JsonlPersistence",
    "LoggingRenderer",
    "NullPersistence",
    "PersistenceBridge",
    "RendererBridge",
    "RendererEvent",
    "RendererHub",
    "SettingsProvider",
    "StaticSettings",
]

"""Per-user session state and the registry that serializes access to it."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from copilot_server.utils.logger import LOGGER, clear_session_id, set_session_id


class CancelToken:
    """Cooperative cancellation flag for one unit of in-flight work."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class Turn:
    user_text: str
    answer_text: str
    created_at: float = field(default_factory=time.time)


@dataclass
class SessionParams:
    """Caller-supplied parameters applied by ``start_session``."""

    profile: Optional[str] = None
    custom_prompt: str = ""
    resume_context: str = ""
    language: str = "en"
    history_enabled: Optional[bool] = None
    silence_timeout_sec: Optional[float] = None


@dataclass
class Session:  # pylint: disable=too-many-instance-attributes
    """Mutable state for one user. Mutate only while holding ``lock``."""

    session_id: str
    params: SessionParams = field(default_factory=SessionParams)
    audio_buffer: List[bytes] = field(default_factory=list)
    speech_frame_count: int = 0
    trailing_silence_frames: int = 0
    has_speech: bool = False
    noise_floor: Optional[float] = None
    silence_timer: Any = None
    timer_active: bool = False
    segment_epoch: int = 0
    is_transcribing: bool = False
    is_generating: bool = False
    cancel_requested: bool = False
    active_transcription: Optional[CancelToken] = None
    active_generation: Optional[CancelToken] = None
    manual_mode: bool = False
    manual_buffer: str = ""
    history: List[Turn] = field(default_factory=list)
    last_emitted_text: str = ""
    last_emitted_at: float = 0.0
    created_at: float = field(default_factory=time.time)
    lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )

    @property
    def busy(self) -> bool:
        return self.is_transcribing or self.is_generating

    def cancel_inflight(self) -> bool:
        """Cancel the active transcription and generation, if any."""
        cancelled = False
        for token in (self.active_transcription, self.active_generation):
            if token is not None and not token.cancelled:
                token.cancel()
                cancelled = True
        return cancelled

    def cancel_silence_timer(self) -> None:
        timer = self.silence_timer
        self.silence_timer = None
        self.timer_active = False
        if timer is not None:
            timer.cancel()

    def reset_segment(self) -> None:
        """Drop buffered audio and counters for the next segment."""
        self.cancel_silence_timer()
        self.audio_buffer = []
        self.speech_frame_count = 0
        self.trailing_silence_frames = 0
        self.has_speech = False
        self.segment_epoch += 1

    def append_turn(self, user_text: str, answer_text: str) -> Turn:
        turn = Turn(user_text=user_text, answer_text=answer_text)
        self.history.append(turn)
        return turn

    def clear(self) -> None:
        """Reset buffers, timers, flags and history. Parameters are kept."""
        self.cancel_inflight()
        self.reset_segment()
        self.noise_floor = None
        self.cancel_requested = False
        self.manual_mode = False
        self.manual_buffer = ""
        self.history = []
        self.last_emitted_text = ""
        self.last_emitted_at = 0.0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "profile": self.params.profile,
            "buffered_frames": len(self.audio_buffer),
            "speech_frame_count": self.speech_frame_count,
            "noise_floor": self.noise_floor,
            "is_transcribing": self.is_transcribing,
            "is_generating": self.is_generating,
            "cancel_requested": self.cancel_requested,
            "manual_mode": self.manual_mode,
            "manual_buffer": self.manual_buffer,
            "history": [
                {
                    "user_text": turn.user_text,
                    "answer_text": turn.answer_text,
                    "created_at": turn.created_at,
                }
                for turn in self.history
            ],
        }


def _noop_session_hook(_: Session) -> None:
    return None


@dataclass(frozen=True)
class SessionStoreHooks:
    """Callbacks invoked on session create/remove."""

    on_create: Callable[[Session], None] = _noop_session_hook
    on_remove: Callable[[Session], None] = _noop_session_hook


class SessionStore:
    """Thread-safe registry of sessions keyed by user id.

    ``access`` is the single entry point for mutating a session: it holds the
    session lock and tags log records with the session id for its duration.
    """

    def __init__(self, hooks: SessionStoreHooks | None = None) -> None:
        self._hooks = hooks or SessionStoreHooks()
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def get_or_create(self, session_id: str) -> Session:
        created = False
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(session_id=session_id)
                self._sessions[session_id] = session
                created = True
        if created:
            LOGGER.info("Created session %s", session_id)
            self._hooks.on_create(session)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    @contextmanager
    def access(self, session_id: str, create: bool = True) -> Iterator[Session]:
        """Yield the session with its lock held."""
        session = self.get_or_create(session_id) if create else self.get(session_id)
        if session is None:
            raise KeyError(session_id)
        token = set_session_id(session_id)
        try:
            with session.lock:
                yield session
        finally:
            clear_session_id(token)

    def remove(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            with session.lock:
                session.clear()
            self._hooks.on_remove(session)
        return session

    def clear(self) -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            self.remove(session_id)

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)


__all__ = [
    "CancelToken",
    "Session",
    "SessionParams",
    "SessionStore",
    "SessionStoreHooks",
    "Turn",
]

"""Speech frame buffering and segment completion policy."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from copilot_server.config.default.pipeline import (
    DEFAULT_MAX_SEGMENT_FRAMES,
    DEFAULT_MIN_SPEECH_FRAMES,
    DEFAULT_SILENCE_TIMEOUT_SEC,
    DEFAULT_TRAILING_PADDING_FRAMES,
)
from copilot_server.utils.logger import LOGGER

if TYPE_CHECKING:
    from copilot_server.backend.application.session_manager import Session


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def default_timer_factory(interval: float, function: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer


@dataclass(frozen=True)
class AccumulatorSettings:
    silence_timeout_sec: float = DEFAULT_SILENCE_TIMEOUT_SEC
    trailing_padding_frames: int = DEFAULT_TRAILING_PADDING_FRAMES
    min_speech_frames: int = DEFAULT_MIN_SPEECH_FRAMES
    max_segment_frames: int = DEFAULT_MAX_SEGMENT_FRAMES


@dataclass
class FrameDecision:
    """Outcome of feeding one frame to the accumulator."""

    buffered: bool = False
    barge_in: bool = False
    timer_armed: bool = False
    segment: Optional[bytes] = None


class AudioAccumulator:
    """Buffers speech frames per session and decides when a segment is complete.

    Callers must hold the session lock for ``on_frame``, ``maybe_flush`` and
    ``flush``. The silence timer calls ``on_silence(session_id, epoch)`` from
    its own thread; the callback is expected to re-enter through the session
    store and call ``maybe_flush`` with the epoch it was given, so a timer that
    outlived its segment flushes nothing.
    """

    def __init__(
        self,
        settings: Optional[AccumulatorSettings] = None,
        timer_factory: Optional[TimerFactory] = None,
        on_silence: Optional[Callable[[str, int], None]] = None,
    ) -> None:
        self.settings = settings or AccumulatorSettings()
        self._timer_factory = timer_factory or default_timer_factory
        self._on_silence = on_silence

    def set_silence_callback(self, callback: Callable[[str, int], None]) -> None:
        self._on_silence = callback

    def on_frame(self, session: "Session", frame: bytes, speaking: bool) -> FrameDecision:
        decision = FrameDecision()
        settings = self.settings
        if speaking:
            if session.busy:
                # In-flight work must observe cancellation before this frame lands.
                decision.barge_in = session.cancel_inflight()
                if decision.barge_in:
                    LOGGER.info("Barge-in detected; cancelling in-flight work")
            session.cancel_requested = False
            session.cancel_silence_timer()
            session.audio_buffer.append(frame)
            session.speech_frame_count += 1
            session.trailing_silence_frames = 0
            session.has_speech = True
            decision.buffered = True
        elif (
            session.has_speech
            and session.trailing_silence_frames < settings.trailing_padding_frames
        ):
            session.audio_buffer.append(frame)
            session.trailing_silence_frames += 1
            decision.buffered = True

        if len(session.audio_buffer) > settings.max_segment_frames:
            LOGGER.info(
                "Segment hit hard cap (%d frames); flushing",
                len(session.audio_buffer),
            )
            decision.segment = self.flush(session, force=True)
            return decision

        if (
            not speaking
            and session.has_speech
            and not session.timer_active
            and session.speech_frame_count >= settings.min_speech_frames
        ):
            self._arm_timer(session)
            decision.timer_armed = True
        return decision

    def _arm_timer(self, session: "Session") -> None:
        session_id = session.session_id
        epoch = session.segment_epoch

        def _fire() -> None:
            if self._on_silence is None:
                return
            try:
                self._on_silence(session_id, epoch)
            except Exception:
                LOGGER.exception("Silence timer callback failed")

        if session.silence_timer is not None:
            session.silence_timer.cancel()
        interval = session.params.silence_timeout_sec or self.settings.silence_timeout_sec
        timer = self._timer_factory(interval, _fire)
        session.silence_timer = timer
        session.timer_active = True
        timer.start()

    def maybe_flush(
        self, session: "Session", epoch: Optional[int] = None
    ) -> Optional[bytes]:
        """Flush on silence timeout unless the session is busy or the timer is stale."""
        if epoch is not None and epoch != session.segment_epoch:
            return None
        session.silence_timer = None
        if session.busy:
            # The next silent frame re-arms the timer.
            session.timer_active = False
            LOGGER.debug("Silence timeout while busy; keeping buffer")
            return None
        return self.flush(session)

    def flush(self, session: "Session", force: bool = False) -> Optional[bytes]:
        """Reset segment state and return the concatenated buffer.

        Returns None when nothing is buffered, when the session is busy and
        ``force`` is False, or when the buffer holds fewer real speech frames
        than ``min_speech_frames``.
        """
        if not session.audio_buffer:
            return None
        if session.busy and not force:
            return None
        frames = session.audio_buffer
        speech_frames = session.speech_frame_count
        session.reset_segment()
        if speech_frames < self.settings.min_speech_frames:
            LOGGER.debug(
                "Discarding segment with %d speech frame(s) (< %d)",
                speech_frames,
                self.settings.min_speech_frames,
            )
            return None
        LOGGER.debug(
            "Flushing segment: %d frames (%d speech)", len(frames), speech_frames
        )
        return b"".join(frames)


__all__ = [
    "AccumulatorSettings",
    "AudioAccumulator",
    "FrameDecision",
    "TimerFactory",
    "default_timer_factory",
]

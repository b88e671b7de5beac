"""Session-level operations that drive the audio to answer pipeline."""

from __future__ import annotations

from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from copilot_server.backend.application.generation import (
    GenerationOptions,
    GenerationPipeline,
    GenerationResult,
)
from copilot_server.backend.application.session_manager import (
    SessionParams,
    SessionStore,
)
from copilot_server.backend.application.transcription import TranscriptionPipeline
from copilot_server.backend.bridges import RendererBridge
from copilot_server.backend.component.accumulator import AudioAccumulator, FrameDecision
from copilot_server.backend.component.vad_gate import VoiceActivityGate
from copilot_server.config.default.pipeline import DEFAULT_SEGMENT_ENERGY_CHECK
from copilot_server.config.default.server import DEFAULT_WORKER_THREADS
from copilot_server.errors import CopilotError, ErrorCode
from copilot_server.utils.logger import LOGGER, clear_session_id, set_session_id

if TYPE_CHECKING:
    from copilot_server.backend.runtime.metrics import Metrics

STATUS_MANUAL_MODE = "Manual Mode (F2 to Answer, F4 to Auto)"
STATUS_AUTO_MODE = "Auto Mode"
STATUS_BUFFER_EMPTY = "Buffer Empty! (Speak first, then F2)"
STATUS_ANSWER_TRIGGERED = "Answer Triggered (Reverting to Auto Mode)"
STATUS_STOPPED = "Stopped"

_PARAM_FIELDS = frozenset(SessionParams.__dataclass_fields__)


@dataclass(frozen=True)
class AnswerServiceSettings:
    segment_energy_check: bool = DEFAULT_SEGMENT_ENERGY_CHECK
    worker_threads: int = DEFAULT_WORKER_THREADS


class AnswerService:  # pylint: disable=too-many-instance-attributes
    """Per-session entry points used by the transports.

    Frame ingestion is synchronous and cheap; segment transcription and
    answer generation run on a shared executor so a slow upstream call for
    one session never blocks frames for another.
    """

    def __init__(
        self,
        store: SessionStore,
        vad: VoiceActivityGate,
        accumulator: AudioAccumulator,
        transcription: TranscriptionPipeline,
        generation: GenerationPipeline,
        renderer: RendererBridge,
        metrics: Optional["Metrics"] = None,
        executor: Optional[Executor] = None,
        settings: Optional[AnswerServiceSettings] = None,
    ) -> None:
        self.store = store
        self.vad = vad
        self.accumulator = accumulator
        self.transcription = transcription
        self.generation = generation
        self.renderer = renderer
        self.settings = settings or AnswerServiceSettings()
        self._metrics = metrics
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, self.settings.worker_threads),
            thread_name_prefix="copilot-worker",
        )
        self.accumulator.set_silence_callback(self._on_silence)

    # -- audio ---------------------------------------------------------------

    def ingest_audio_frame(self, session_id: str, frame: bytes) -> FrameDecision:
        _require_session_id(session_id)
        if not frame or len(frame) % 2:
            raise CopilotError(ErrorCode.AUDIO_FRAME_INVALID)
        with self.store.access(session_id) as session:
            speaking = self.vad.classify(session, frame)
            decision = self.accumulator.on_frame(session, frame, speaking)
        if self._metrics is not None:
            self._metrics.record_frame()
            if decision.barge_in:
                self._metrics.record_barge_in()
        if decision.segment is not None:
            self._submit(session_id, self._process_segment, session_id, decision.segment)
        return decision

    def _on_silence(self, session_id: str, epoch: int) -> None:
        try:
            with self.store.access(session_id, create=False) as session:
                segment = self.accumulator.maybe_flush(session, epoch)
        except KeyError:
            LOGGER.debug("Silence timer fired for removed session %s", session_id)
            return
        if segment is not None:
            self._submit(session_id, self._process_segment, session_id, segment)

    def _process_segment(self, session_id: str, segment: bytes) -> Optional[str]:
        """Transcribe one segment and either answer it or add it to the manual buffer."""
        session = self.store.get(session_id)
        if session is None:
            return None
        if self._metrics is not None:
            self._metrics.record_segment_flushed()
        if self.settings.segment_energy_check:
            with session.lock:
                loud_enough = self.vad.segment_is_speech(session, segment)
            if not loud_enough:
                LOGGER.info("Segment below speech energy; dropped")
                self._record_dropped("low_energy")
                return None
        if session.cancel_requested:
            self._record_dropped("cancelled")
            return None

        transcript = self.transcription.transcribe(session, segment)
        if transcript is None:
            return None

        with session.lock:
            if session.cancel_requested:
                self._record_dropped("cancelled")
                return None
            manual = session.manual_mode
            if manual:
                session.manual_buffer += transcript.text + " "
                buffered = session.manual_buffer.strip()
        if manual:
            LOGGER.info("Manual mode: transcript buffered")
            self._safe(self.renderer.send_transcript_partial, session_id, buffered)
            return transcript.text
        self.generation.generate(
            session, transcript.text, GenerationOptions(is_audio=True)
        )
        return transcript.text

    # -- text ----------------------------------------------------------------

    def ingest_text_message(
        self,
        session_id: str,
        text: str,
        condensed_text: Optional[str] = None,
    ) -> Future:
        _require_session_id(session_id)
        if not isinstance(text, str) or not text.strip():
            raise CopilotError(ErrorCode.TEXT_MESSAGE_INVALID)
        self.store.get_or_create(session_id)
        options = GenerationOptions(is_audio=False, condensed_text=condensed_text)
        return self._submit(session_id, self._generate, session_id, text, options)

    def _generate(
        self, session_id: str, text: str, options: GenerationOptions
    ) -> Optional[GenerationResult]:
        session = self.store.get(session_id)
        if session is None:
            return None
        return self.generation.generate(session, text, options)

    # -- session control -------------------------------------------------------

    def start_session(self, session_id: str, **params: Any) -> Dict[str, Any]:
        _require_session_id(session_id)
        unknown = set(params) - _PARAM_FIELDS
        if unknown:
            raise CopilotError(
                ErrorCode.SESSION_PARAMS_INVALID,
                f"unknown session parameter(s): {', '.join(sorted(unknown))}",
            )
        with self.store.access(session_id) as session:
            for name, value in params.items():
                if value is not None:
                    setattr(session.params, name, value)
            session.cancel_requested = False
            snapshot = session.snapshot()
        LOGGER.info("Session started (profile=%s)", snapshot["profile"])
        return snapshot

    def stop_session(self, session_id: str) -> bool:
        """Discard in-flight and buffered work until new speech or ``start_session``."""
        _require_session_id(session_id)
        with self.store.access(session_id) as session:
            session.cancel_requested = True
            cancelled = session.cancel_inflight()
            session.reset_segment()
        LOGGER.info("Session stopped (cancelled_inflight=%s)", cancelled)
        self._safe(self.renderer.send_status, STATUS_STOPPED, session_id)
        return cancelled

    def new_session(self, session_id: str) -> Dict[str, Any]:
        _require_session_id(session_id)
        with self.store.access(session_id) as session:
            session.clear()
            snapshot = session.snapshot()
        LOGGER.info("Session reset")
        return snapshot

    def close_session(self, session_id: str) -> bool:
        _require_session_id(session_id)
        return self.store.remove(session_id) is not None

    def set_manual_mode(self, session_id: str, enabled: bool) -> bool:
        _require_session_id(session_id)
        with self.store.access(session_id) as session:
            session.manual_mode = bool(enabled)
            session.manual_buffer = ""
        LOGGER.info("Manual mode set to %s (buffer cleared)", bool(enabled))
        self._safe(
            self.renderer.send_status,
            STATUS_MANUAL_MODE if enabled else STATUS_AUTO_MODE,
            session_id,
        )
        return bool(enabled)

    def trigger_manual_flush(self, session_id: str) -> Optional[Future]:
        """Answer the manual buffer, transcribing any pending audio first.

        Returns the generation future, or None when the buffer was empty.
        """
        _require_session_id(session_id)
        with self.store.access(session_id) as session:
            segment = self.accumulator.flush(session)
        if segment is not None:
            LOGGER.info("Processing pending audio before manual answer")
            self._process_segment(session_id, segment)

        with self.store.access(session_id) as session:
            text = session.manual_buffer.strip()
            if text:
                session.manual_buffer = ""
                session.manual_mode = False
        if not text:
            LOGGER.info("Manual trigger ignored: buffer empty")
            self._safe(self.renderer.send_status, STATUS_BUFFER_EMPTY, session_id)
            return None
        self._safe(self.renderer.send_status, STATUS_ANSWER_TRIGGERED, session_id)
        options = GenerationOptions(is_audio=True)
        return self._submit(session_id, self._generate, session_id, text, options)

    def session_snapshot(self, session_id: str) -> Dict[str, Any]:
        _require_session_id(session_id)
        session = self.store.get(session_id)
        if session is None:
            raise CopilotError(ErrorCode.SESSION_NOT_FOUND, f"Unknown session_id {session_id}")
        with session.lock:
            return session.snapshot()

    def shutdown(self) -> None:
        self.store.clear()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    # -- helpers ---------------------------------------------------------------

    def _submit(
        self, session_id: str, fn: Callable[..., Any], *args: Any
    ) -> Future:
        def _run() -> Any:
            token = set_session_id(session_id)
            try:
                return fn(*args)
            except Exception:
                LOGGER.exception("Pipeline task failed")
                if self._metrics is not None:
                    self._metrics.record_error(ErrorCode.UNEXPECTED.value)
                raise
            finally:
                clear_session_id(token)

        return self._executor.submit(_run)

    def _record_dropped(self, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.record_segment_dropped(reason)

    @staticmethod
    def _safe(fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            LOGGER.exception("Renderer call failed")


def _require_session_id(session_id: str) -> None:
    if not session_id:
        raise CopilotError(ErrorCode.SESSION_ID_REQUIRED)


__all__ = ["AnswerService", "AnswerServiceSettings"]

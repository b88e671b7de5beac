"""Fakes for pipeline tests: upstream client, timers, executors, renderer."""

from __future__ import annotations

import threading
from concurrent.futures import Executor, Future
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from copilot_server.backend.application.answer_service import AnswerService
from copilot_server.backend.application.generation import GenerationPipeline
from copilot_server.backend.application.session_manager import SessionStore
from copilot_server.backend.application.transcription import TranscriptionPipeline
from copilot_server.backend.bridges import StaticSettings
from copilot_server.backend.component.accumulator import AudioAccumulator
from copilot_server.backend.component.credential_pool import CredentialPool
from copilot_server.backend.component.transcript_filters import (
    FilterChain,
    default_filters,
)
from copilot_server.backend.component.vad_gate import VoiceActivityGate
from copilot_server.backend.runtime.metrics import Metrics
from copilot_server.backend.upstream.base import (
    CompletionRequest,
    TranscriptionRequest,
    TranscriptionResponse,
)
from copilot_server.errors import ErrorCode, UpstreamError

FRAME_SAMPLES = 4000  # 250 ms at 16 kHz


def pcm_frame(amplitude: int, samples: int = FRAME_SAMPLES) -> bytes:
    """Constant-amplitude PCM16 frame; its RMS equals ``amplitude``."""
    return np.full(samples, amplitude, dtype=np.int16).tobytes()


LOUD = pcm_frame(5000)
QUIET = pcm_frame(50)


def rate_limited(detail: str = "429") -> UpstreamError:
    return UpstreamError(ErrorCode.UPSTREAM_RATE_LIMITED, detail)


def permission_denied(detail: str = "403") -> UpstreamError:
    return UpstreamError(ErrorCode.UPSTREAM_PERMISSION_DENIED, detail)


def transient(detail: str = "timeout") -> UpstreamError:
    return UpstreamError(ErrorCode.UPSTREAM_TRANSIENT, detail)


class FakeUpstreamClient:
    """Scripted upstream.

    ``transcripts`` / ``completions`` are queues of outcomes consumed per
    call: a string or TranscriptionResponse / list of tokens to return, or an
    exception to raise. ``probe_errors`` maps api keys to the error raised by
    their probe. ``on_token`` runs before each yielded token.
    """

    def __init__(self) -> None:
        self.transcripts: List[Any] = []
        self.completions: List[Any] = []
        self.probe_errors: Dict[str, Exception] = {}
        self.probe_calls: List[Tuple[str, str]] = []
        self.transcribe_calls: List[Tuple[str, TranscriptionRequest]] = []
        self.completion_calls: List[Tuple[str, CompletionRequest]] = []
        self.on_token: Optional[Callable[[int, str], None]] = None
        self.default_transcript: Any = "what is a binary search tree"
        self.default_completion: Any = ["- It is ", "a sorted ", "tree."]
        self._lock = threading.Lock()

    def probe(self, api_key: str, model: str, timeout_sec: float) -> None:
        with self._lock:
            self.probe_calls.append((api_key, model))
            error = self.probe_errors.get(api_key)
        if error is not None:
            raise error

    def transcribe(
        self, api_key: str, request: TranscriptionRequest
    ) -> TranscriptionResponse:
        with self._lock:
            self.transcribe_calls.append((api_key, request))
            outcome = (
                self.transcripts.pop(0) if self.transcripts else self.default_transcript
            )
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, TranscriptionResponse):
            return outcome
        return TranscriptionResponse(text=outcome, language="en", no_speech_probs=[0.01])

    def stream_completion(self, api_key: str, request: CompletionRequest):
        with self._lock:
            self.completion_calls.append((api_key, request))
            outcome = (
                self.completions.pop(0) if self.completions else self.default_completion
            )
        if isinstance(outcome, Exception):
            raise outcome
        return self._tokens(list(outcome))

    def _tokens(self, tokens: List[Any]):
        for index, token in enumerate(tokens):
            if isinstance(token, Exception):
                raise token
            if self.on_token is not None:
                self.on_token(index, token)
            yield token


class FakeTimer:
    def __init__(self, interval: float, function: Callable[[], None]) -> None:
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function()


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def last(self) -> FakeTimer:
        return self.timers[-1]

    def live(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if timer.started and not timer.cancelled]


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, fn, /, *args, **kwargs) -> Future:
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:  # pylint: disable=broad-except
            future.set_exception(exc)
        return future


class DeferredExecutor(Executor):
    """Queues work until ``run_all``; lets tests interleave pipeline steps."""

    def __init__(self) -> None:
        self.pending: List[Tuple[Future, Callable[[], Any]]] = []

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        self.pending.append((future, lambda: fn(*args, **kwargs)))
        return future

    def run_all(self) -> None:
        while self.pending:
            future, call = self.pending.pop(0)
            try:
                future.set_result(call())
            except BaseException as exc:  # pylint: disable=broad-except
                future.set_exception(exc)


class RecordingRenderer:
    def __init__(self) -> None:
        self.events: List[Tuple[str, Optional[str], str]] = []
        self._lock = threading.Lock()

    def _record(self, kind: str, session_id: Optional[str], text: str) -> None:
        with self._lock:
            self.events.append((kind, session_id, text))

    def send_status(self, text: str, session_id: Optional[str] = None) -> None:
        self._record("status", session_id, text)

    def send_token(self, session_id: str, text: str) -> None:
        self._record("token", session_id, text)

    def send_final_answer(self, session_id: str, text: str) -> None:
        self._record("final", session_id, text)

    def send_transcript_partial(self, session_id: str, text: str) -> None:
        self._record("partial", session_id, text)

    def of(self, kind: str) -> List[str]:
        with self._lock:
            return [text for k, _, text in self.events if k == kind]


class RecordingPersistence:
    def __init__(self) -> None:
        self.turns: List[Tuple[str, str, str]] = []

    def save_turn(self, session_id: str, user_text: str, answer_text: str) -> None:
        self.turns.append((session_id, user_text, answer_text))


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class PipelineHarness:
    """Fully wired AnswerService over fakes."""

    def __init__(
        self,
        keys: Optional[Dict[str, List[str]]] = None,
        executor: Optional[Executor] = None,
        settings: Optional[Dict[str, str]] = None,
    ) -> None:
        self.clock = FakeClock()
        self.client = FakeUpstreamClient()
        self.timers = FakeTimerFactory()
        self.executor = executor or InlineExecutor()
        self.renderer = RecordingRenderer()
        self.persistence = RecordingPersistence()
        self.metrics = Metrics()
        self.settings = StaticSettings(settings or {})
        self.pool = CredentialPool(
            keys if keys is not None else {"general": ["key-a", "key-b"]},
            time_fn=self.clock,
        )
        self.store = SessionStore()
        self.vad = VoiceActivityGate()
        self.accumulator = AudioAccumulator(timer_factory=self.timers)
        self.transcription = TranscriptionPipeline(
            self.pool,
            self.client,
            filters=FilterChain(default_filters()),
            metrics=self.metrics,
            time_fn=self.clock,
        )
        self.generation = GenerationPipeline(
            self.pool,
            self.client,
            self.renderer,
            persistence=self.persistence,
            settings_provider=self.settings,
            metrics=self.metrics,
            executor=self.executor,
        )
        self.service = AnswerService(
            store=self.store,
            vad=self.vad,
            accumulator=self.accumulator,
            transcription=self.transcription,
            generation=self.generation,
            renderer=self.renderer,
            metrics=self.metrics,
            executor=self.executor,
        )

    def speak(self, session_id: str, speech_frames: int = 3, silence_frames: int = 2) -> None:
        for _ in range(speech_frames):
            self.service.ingest_audio_frame(session_id, LOUD)
        for _ in range(silence_frames):
            self.service.ingest_audio_frame(session_id, QUIET)

    def fire_silence(self) -> None:
        self.timers.last.fire()


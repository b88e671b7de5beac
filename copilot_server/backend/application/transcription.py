"""Speech segment to filtered text through the credential pool."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from copilot_server.backend.application.prompts import transcription_prompt
from copilot_server.backend.application.session_manager import CancelToken, Session
from copilot_server.backend.component.credential_pool import CredentialPool
from copilot_server.backend.component.transcript_filters import FilterChain
from copilot_server.backend.upstream.base import (
    TranscriptionRequest,
    TranscriptionResponse,
    UpstreamClient,
)
from copilot_server.config.default.pipeline import (
    DEFAULT_DUPLICATE_WINDOW_SEC,
    DEFAULT_NO_SPEECH_THRESHOLD,
    DEFAULT_PROMPT_CONTEXT_CHARS,
    DEFAULT_PROMPT_MAX_CHARS,
    DEFAULT_TRANSCRIPTION_LANGUAGE,
    DEFAULT_TRANSCRIPTION_MAX_ATTEMPTS,
    DEFAULT_TRANSCRIPTION_MODEL,
    DEFAULT_TRANSCRIPTION_TIMEOUT_SEC,
)
from copilot_server.config.default.server import DEFAULT_SAMPLE_RATE
from copilot_server.errors import ErrorCode, UpstreamError, format_error
from copilot_server.utils.audio import pcm16_to_wav
from copilot_server.utils.logger import LOGGER, TRANSCRIPT_LOGGER

if TYPE_CHECKING:
    from copilot_server.backend.runtime.metrics import Metrics


@dataclass(frozen=True)
class Transcript:
    text: str
    language: str = ""


@dataclass(frozen=True)
class TranscriptionSettings:
    model: str = DEFAULT_TRANSCRIPTION_MODEL
    language: str = DEFAULT_TRANSCRIPTION_LANGUAGE
    timeout_sec: float = DEFAULT_TRANSCRIPTION_TIMEOUT_SEC
    max_attempts: int = DEFAULT_TRANSCRIPTION_MAX_ATTEMPTS
    no_speech_threshold: float = DEFAULT_NO_SPEECH_THRESHOLD
    duplicate_window_sec: float = DEFAULT_DUPLICATE_WINDOW_SEC
    sample_rate: int = DEFAULT_SAMPLE_RATE
    prompt_context_chars: int = DEFAULT_PROMPT_CONTEXT_CHARS
    prompt_max_chars: int = DEFAULT_PROMPT_MAX_CHARS


class TranscriptionPipeline:
    """Transcribes one segment at a time per session.

    ``transcribe`` returns None for every "no usable speech" outcome (busy,
    cancelled, credentials exhausted, low confidence, filtered, duplicate)
    and never raises.
    """

    def __init__(
        self,
        pool: CredentialPool,
        client: UpstreamClient,
        settings: Optional[TranscriptionSettings] = None,
        filters: Optional[FilterChain] = None,
        metrics: Optional["Metrics"] = None,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        self.pool = pool
        self.client = client
        self.settings = settings or TranscriptionSettings()
        self.filters = filters or FilterChain()
        self._metrics = metrics
        self._time_fn = time_fn or time.time

    def transcribe(
        self,
        session: Session,
        segment: bytes,
        cancel_token: Optional[CancelToken] = None,
    ) -> Optional[Transcript]:
        token = cancel_token or CancelToken()
        with session.lock:
            if session.is_transcribing:
                LOGGER.info("Transcription already in flight; rejecting segment")
                return None
            session.is_transcribing = True
            session.active_transcription = token
            resume_context = session.params.resume_context
            language = session.params.language or self.settings.language
        started = time.perf_counter()
        try:
            response = self._request(session, token, segment, resume_context, language)
            if self._metrics is not None:
                self._metrics.record_transcription(
                    response is not None, time.perf_counter() - started
                )
            if response is None or _cancelled(session, token):
                return None
            return self._accept(session, token, response, language)
        except Exception:
            LOGGER.exception("Transcription failed")
            return None
        finally:
            with session.lock:
                session.is_transcribing = False
                if session.active_transcription is token:
                    session.active_transcription = None

    def _request(
        self,
        session: Session,
        token: CancelToken,
        segment: bytes,
        resume_context: str,
        language: str,
    ) -> Optional[TranscriptionResponse]:
        model = self.settings.model
        candidates = self.pool.candidates(model)
        if not candidates:
            LOGGER.error(format_error(ErrorCode.NO_CREDENTIALS_CONFIGURED))
            return None
        request = TranscriptionRequest(
            wav_bytes=pcm16_to_wav(segment, self.settings.sample_rate),
            model=model,
            language=_base_language(language),
            prompt=transcription_prompt(
                resume_context,
                context_chars=self.settings.prompt_context_chars,
                max_chars=self.settings.prompt_max_chars,
            ),
            temperature=0.0,
            timeout_sec=self.settings.timeout_sec,
        )
        max_attempts = min(len(candidates), self.settings.max_attempts)
        for attempt in range(1, max_attempts + 1):
            if _cancelled(session, token):
                LOGGER.info("Transcription cancelled before attempt %d", attempt)
                return None
            credential = self.pool.next(model)
            if credential is None:
                break
            if self.pool.is_blocked(credential, model):
                LOGGER.debug("Skipping %s (blocked for %s)", credential.label, model)
                continue
            try:
                response = self.client.transcribe(credential.value, request)
            except UpstreamError as exc:
                LOGGER.warning(
                    "Transcription attempt %d/%d failed with %s: %s",
                    attempt,
                    max_attempts,
                    credential.label,
                    exc.code.value,
                )
                self.pool.record_failure(credential, model, exc)
                self._record_credential_event(exc)
                continue
            self.pool.mark_verified(credential, model)
            return response
        LOGGER.warning("Transcription exhausted %d attempt(s)", max_attempts)
        return None

    def _accept(
        self,
        session: Session,
        token: CancelToken,
        response: TranscriptionResponse,
        language: str = "en",
    ) -> Optional[Transcript]:
        text = (response.text or "").strip()
        if not text:
            LOGGER.debug("Transcription returned no text")
            return None
        avg_no_speech = response.average_no_speech_prob
        if avg_no_speech is not None and avg_no_speech > self.settings.no_speech_threshold:
            LOGGER.info(
                "Low-confidence transcription dropped (avg no_speech_prob=%.2f)",
                avg_no_speech,
            )
            self._record_filtered("low_confidence")
            return None
        reason = self.filters.rejection_reason(text)
        if reason is not None:
            LOGGER.info("Transcription filtered (%s)", reason)
            TRANSCRIPT_LOGGER.info("filtered[%s]: %s", reason, text)
            self._record_filtered(reason)
            return None
        detected = (response.language or "").lower()
        if (
            detected
            and _base_language(language) == "en"
            and not detected.startswith("en")
        ):
            LOGGER.info("Non-English transcription (%s) dropped", response.language)
            TRANSCRIPT_LOGGER.info("filtered[non_english]: %s", text)
            self._record_filtered("non_english")
            return None
        with session.lock:
            if _cancelled(session, token):
                return None
            now = self._time_fn()
            if (
                text == session.last_emitted_text
                and now - session.last_emitted_at < self.settings.duplicate_window_sec
            ):
                LOGGER.info("Duplicate transcription suppressed")
                self._record_filtered("duplicate")
                return None
            session.last_emitted_text = text
            session.last_emitted_at = now
        TRANSCRIPT_LOGGER.info("transcript: %s", text)
        return Transcript(text=text, language=response.language)

    def _record_filtered(self, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.record_transcript_filtered(reason)

    def _record_credential_event(self, exc: UpstreamError) -> None:
        if self._metrics is not None:
            self._metrics.record_credential_event(exc.code.name.lower())


def _cancelled(session: Session, token: CancelToken) -> bool:
    return token.cancelled or session.cancel_requested


def _base_language(language: str) -> str:
    """``en-US`` -> ``en``."""
    return (language or "en").split("-")[0].split("_")[0].lower()


__all__ = ["Transcript", "TranscriptionPipeline", "TranscriptionSettings"]

"""Cancellable streaming answer generation with credential failover."""

from __future__ import annotations

import time
from concurrent.futures import Executor
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from copilot_server.backend.application.model_router import select_model
from copilot_server.backend.application.prompts import (
    VOICE_MODE_SUFFIX,
    build_messages,
    system_prompt,
)
from copilot_server.backend.application.session_manager import CancelToken, Session
from copilot_server.backend.bridges import (
    NullPersistence,
    PersistenceBridge,
    RendererBridge,
    SettingsProvider,
    StaticSettings,
)
from copilot_server.backend.component.credential_pool import (
    Credential,
    CredentialPool,
)
from copilot_server.backend.upstream.base import CompletionRequest, UpstreamClient
from copilot_server.config.default.pipeline import (
    DEFAULT_COMPLEX_MODEL,
    DEFAULT_HISTORY_ANSWER_CHARS,
    DEFAULT_HISTORY_TURNS,
    DEFAULT_MAX_OVERALL_ATTEMPTS,
    DEFAULT_MAX_TOKENS,
    DEFAULT_PROBE_TIMEOUT_SEC,
    DEFAULT_PROFILE,
    DEFAULT_SIMPLE_MODEL,
    DEFAULT_STREAM_TIMEOUT_SEC,
    DEFAULT_TEMPERATURE,
)
from copilot_server.errors import (
    ErrorCode,
    UpstreamError,
    format_error,
    is_user_visible,
    spec_for,
)
from copilot_server.utils.logger import LOGGER

if TYPE_CHECKING:
    from copilot_server.backend.runtime.metrics import Metrics

STATUS_LISTENING = "Listening..."
ISOLATED_PROFILES = frozenset({"interview"})


class GenerationPhase(str, Enum):
    SELECTING_CREDENTIAL = "selecting_credential"
    VERIFYING = "verifying"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    RETRYING = "retrying"
    FAILED = "failed"


class GenerationStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    ALL_CREDENTIALS_EXHAUSTED = "all_credentials_exhausted"
    EMPTY_RESPONSE_EXHAUSTED = "empty_response_exhausted"


_STATUS_ERROR_CODES = {
    GenerationStatus.SKIPPED: ErrorCode.GENERATION_BUSY,
    GenerationStatus.CANCELLED: ErrorCode.GENERATION_CANCELLED,
    GenerationStatus.ALL_CREDENTIALS_EXHAUSTED: ErrorCode.ALL_CREDENTIALS_EXHAUSTED,
    GenerationStatus.EMPTY_RESPONSE_EXHAUSTED: ErrorCode.EMPTY_RESPONSE_EXHAUSTED,
}


@dataclass
class GenerationOptions:
    is_audio: bool = False
    # Shorter user text stored in history instead of the prompt text.
    condensed_text: Optional[str] = None


@dataclass
class GenerationResult:
    status: GenerationStatus
    text: str = ""
    model: str = ""
    attempts: int = 0
    phases: List[GenerationPhase] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == GenerationStatus.COMPLETED

    @property
    def error_code(self) -> Optional[ErrorCode]:
        return _STATUS_ERROR_CODES.get(self.status)


@dataclass(frozen=True)
class GenerationSettings:
    simple_model: str = DEFAULT_SIMPLE_MODEL
    complex_model: str = DEFAULT_COMPLEX_MODEL
    max_overall_attempts: int = DEFAULT_MAX_OVERALL_ATTEMPTS
    probe_timeout_sec: float = DEFAULT_PROBE_TIMEOUT_SEC
    stream_timeout_sec: float = DEFAULT_STREAM_TIMEOUT_SEC
    history_turns: int = DEFAULT_HISTORY_TURNS
    history_answer_chars: int = DEFAULT_HISTORY_ANSWER_CHARS
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    default_profile: str = DEFAULT_PROFILE


@dataclass
class _Attempt:
    """Mutable state carried through one ``generate`` call."""

    session: Session
    token: CancelToken
    model: str
    request: CompletionRequest
    user_text: str
    history_text: str
    result: GenerationResult

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled or self.session.cancel_requested

    def enter(self, phase: GenerationPhase) -> None:
        self.result.phases.append(phase)
        LOGGER.debug("Generation phase -> %s", phase.value)


def _parse_bool(value: str) -> Optional[bool]:
    text = (value or "").strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return None


class GenerationPipeline:
    """Streams one answer per session at a time.

    Every attempt walks SELECTING_CREDENTIAL -> VERIFYING -> STREAMING ->
    FINALIZING and ends in DONE, RETRYING or FAILED. Empty answers and
    upstream failures consume the same ``max_overall_attempts`` budget.
    """

    def __init__(
        self,
        pool: CredentialPool,
        client: UpstreamClient,
        renderer: RendererBridge,
        persistence: Optional[PersistenceBridge] = None,
        settings_provider: Optional[SettingsProvider] = None,
        settings: Optional[GenerationSettings] = None,
        metrics: Optional["Metrics"] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self.pool = pool
        self.client = client
        self.renderer = renderer
        self.persistence = persistence or NullPersistence()
        self.settings_provider = settings_provider or StaticSettings()
        self.settings = settings or GenerationSettings()
        self._metrics = metrics
        self._executor = executor

    def cancel(self, session: Session) -> bool:
        with session.lock:
            token = session.active_generation
            if token is None or token.cancelled:
                return False
            token.cancel()
            return True

    def generate(
        self,
        session: Session,
        text: str,
        options: Optional[GenerationOptions] = None,
    ) -> GenerationResult:
        options = options or GenerationOptions()
        with session.lock:
            if session.cancel_requested:
                LOGGER.info("Generation skipped: session stopped")
                return GenerationResult(status=GenerationStatus.CANCELLED)
            if session.is_generating:
                LOGGER.warning("Generation skipped: already generating")
                self._status(spec_for(ErrorCode.GENERATION_BUSY).message, session)
                return GenerationResult(status=GenerationStatus.SKIPPED)
            session.is_generating = True
            token = CancelToken()
            session.active_generation = token
            params = session.params
            history = list(session.history)

        started = time.perf_counter()
        model = select_model(
            text, self.settings.simple_model, self.settings.complex_model
        )
        result = GenerationResult(status=GenerationStatus.CANCELLED, model=model)
        try:
            request = self._build_request(params, history, text, model, options)
            attempt = _Attempt(
                session=session,
                token=token,
                model=model,
                request=request,
                user_text=text,
                history_text=options.condensed_text or text,
                result=result,
            )
            LOGGER.info("Generating with %s", model)
            self._run(attempt)
        except Exception:
            LOGGER.exception("Generation failed unexpectedly")
            result.status = GenerationStatus.ALL_CREDENTIALS_EXHAUSTED
            result.phases.append(GenerationPhase.FAILED)
            self._report_failure(session, result.status)
        finally:
            with session.lock:
                session.is_generating = False
                if session.active_generation is token:
                    session.active_generation = None
        if self._metrics is not None:
            self._metrics.record_generation(
                result.status.value, time.perf_counter() - started
            )
        return result

    def _build_request(
        self,
        params: Any,
        history: List[Any],
        text: str,
        model: str,
        options: GenerationOptions,
    ) -> CompletionRequest:
        provider = self.settings_provider
        profile = params.profile or provider.get_setting(
            "profile", self.settings.default_profile
        )
        custom_prompt = provider.get_setting("customPrompt", params.custom_prompt)
        resume_context = provider.get_setting("resumeContext", params.resume_context)
        history_enabled = params.history_enabled
        if history_enabled is None:
            history_enabled = _parse_bool(provider.get_setting("historyEnabled", ""))
        if history_enabled is None:
            history_enabled = profile not in ISOLATED_PROFILES
        system = system_prompt(profile, custom_prompt, resume_context)
        if options.is_audio:
            system += VOICE_MODE_SUFFIX
        LOGGER.debug(
            "Prompt profile=%s history=%s resume_chars=%d custom_chars=%d",
            profile,
            history_enabled,
            len(resume_context),
            len(custom_prompt),
        )
        messages = build_messages(
            system,
            history,
            text,
            self.settings.history_turns if history_enabled else 0,
            self.settings.history_answer_chars,
        )
        return CompletionRequest(
            messages=messages,
            model=model,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
            timeout_sec=self.settings.stream_timeout_sec,
        )

    def _run(self, attempt: _Attempt) -> None:
        result = attempt.result
        session = attempt.session
        max_attempts = max(1, self.settings.max_overall_attempts)
        failure = GenerationStatus.ALL_CREDENTIALS_EXHAUSTED
        for number in range(1, max_attempts + 1):
            result.attempts = number
            if attempt.cancelled:
                self._finish_cancelled(attempt)
                return
            attempt.enter(GenerationPhase.SELECTING_CREDENTIAL)
            credential = self._select_credential(attempt)
            if attempt.cancelled:
                self._finish_cancelled(attempt)
                return
            if credential is None:
                LOGGER.error(
                    "No usable credential for %s (attempt %d/%d)",
                    attempt.model,
                    number,
                    max_attempts,
                )
                failure = GenerationStatus.ALL_CREDENTIALS_EXHAUSTED
                if number < max_attempts:
                    attempt.enter(GenerationPhase.RETRYING)
                continue

            attempt.enter(GenerationPhase.STREAMING)
            self._status(f"Thinking ({credential.label})...", session)
            try:
                answer = self._stream(attempt, credential)
            except UpstreamError as exc:
                LOGGER.warning(
                    "Completion failed with %s: %s", credential.label, exc.code.value
                )
                self.pool.record_failure(credential, attempt.model, exc)
                self._record_credential_event(exc)
                failure = GenerationStatus.ALL_CREDENTIALS_EXHAUSTED
                if number < max_attempts:
                    attempt.enter(GenerationPhase.RETRYING)
                    self._status(
                        f"AI Failed ({credential.label}). Retrying "
                        f"({number + 1}/{max_attempts})...",
                        session,
                    )
                continue
            if answer is None:
                self._finish_cancelled(attempt)
                return

            attempt.enter(GenerationPhase.FINALIZING)
            if not answer.strip():
                LOGGER.warning(
                    "Empty response from %s (attempt %d/%d)",
                    credential.label,
                    number,
                    max_attempts,
                )
                failure = GenerationStatus.EMPTY_RESPONSE_EXHAUSTED
                if number < max_attempts:
                    attempt.enter(GenerationPhase.RETRYING)
                    self._status(
                        f"Empty response. Retrying ({number + 1}/{max_attempts})...",
                        session,
                    )
                continue

            if not self._finalize(attempt, credential, answer):
                self._finish_cancelled(attempt)
                return
            return

        result.status = failure
        attempt.enter(GenerationPhase.FAILED)
        LOGGER.error(format_error(_STATUS_ERROR_CODES[failure]))
        self._report_failure(session, failure)

    def _select_credential(self, attempt: _Attempt) -> Optional[Credential]:
        """Walk the bucket once: skip blocked, reuse verified, probe the rest."""
        model = attempt.model
        for _ in range(len(self.pool.candidates(model))):
            if attempt.cancelled:
                return None
            credential = self.pool.next(model)
            if credential is None:
                return None
            if self.pool.is_blocked(credential, model):
                LOGGER.debug("Skipping %s (blocked for %s)", credential.label, model)
                continue
            if self.pool.is_verified(credential, model):
                return credential
            attempt.enter(GenerationPhase.VERIFYING)
            self._status(f"Verifying key ({credential.label})...", attempt.session)
            try:
                self.client.probe(
                    credential.value, model, self.settings.probe_timeout_sec
                )
            except UpstreamError as exc:
                LOGGER.warning(
                    "Verification failed for %s: %s", credential.label, exc.code.value
                )
                self.pool.record_failure(credential, model, exc)
                self.pool.unmark_verified(credential, model)
                self._record_credential_event(exc)
                continue
            self.pool.mark_verified(credential, model)
            LOGGER.info("Verified %s for %s", credential.label, model)
            return credential
        return None

    def _stream(self, attempt: _Attempt, credential: Credential) -> Optional[str]:
        """Return the aggregated answer, or None when cancelled mid-stream."""
        session_id = attempt.session.session_id
        pieces: List[str] = []
        stream = self.client.stream_completion(credential.value, attempt.request)
        try:
            for piece in stream:
                if attempt.cancelled:
                    LOGGER.info("Stream aborted after %d token(s)", len(pieces))
                    return None
                pieces.append(piece)
                self._safe(self.renderer.send_token, session_id, piece)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
        if attempt.cancelled:
            return None
        return "".join(pieces)

    def _finalize(self, attempt: _Attempt, credential: Credential, answer: str) -> bool:
        session = attempt.session
        with session.lock:
            if attempt.cancelled:
                return False
            self._safe(self.renderer.send_final_answer, session.session_id, answer)
            session.append_turn(attempt.history_text, answer)
        attempt.result.status = GenerationStatus.COMPLETED
        attempt.result.text = answer
        self._persist(session.session_id, attempt.history_text, answer)
        self._status(STATUS_LISTENING, session)
        self.pool.mark_verified(credential, attempt.model)
        attempt.enter(GenerationPhase.DONE)
        return True

    def _finish_cancelled(self, attempt: _Attempt) -> None:
        LOGGER.info("Generation cancelled")
        attempt.result.status = GenerationStatus.CANCELLED
        attempt.result.text = ""
        attempt.enter(GenerationPhase.FAILED)

    def _report_failure(self, session: Session, status: GenerationStatus) -> None:
        code = _STATUS_ERROR_CODES[status]
        if is_user_visible(code):
            self._status(f"Error: {spec_for(code).message}", session)

    def _persist(self, session_id: str, user_text: str, answer_text: str) -> None:
        def _save() -> None:
            try:
                self.persistence.save_turn(session_id, user_text, answer_text)
            except Exception:
                LOGGER.exception("Failed to persist turn")

        if self._executor is None:
            _save()
            return
        try:
            self._executor.submit(_save)
        except RuntimeError:
            LOGGER.warning("Executor unavailable; persisting turn inline")
            _save()

    def _status(self, text: str, session: Session) -> None:
        self._safe(self.renderer.send_status, text, session.session_id)

    @staticmethod
    def _safe(fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            LOGGER.exception("Renderer call failed")

    def _record_credential_event(self, exc: UpstreamError) -> None:
        if self._metrics is not None:
            self._metrics.record_credential_event(exc.code.name.lower())


__all__ = [
    "GenerationOptions",
    "GenerationPhase",
    "GenerationPipeline",
    "GenerationResult",
    "GenerationSettings",
    "GenerationStatus",
]

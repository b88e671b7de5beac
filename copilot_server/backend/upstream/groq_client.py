"""Groq SDK implementation of the upstream client."""

from __future__ import annotations

from typing import Any, Iterator, List

import groq

from copilot_server.backend.upstream.base import (
    CompletionRequest,
    TranscriptionRequest,
    TranscriptionResponse,
)
from copilot_server.errors import ErrorCode, UpstreamError
from copilot_server.utils.logger import LOGGER


def translate_error(exc: Exception) -> UpstreamError:
    """Map SDK exceptions onto the credential policy codes."""
    if isinstance(exc, UpstreamError):
        return exc
    message = str(exc)
    status_code = getattr(exc, "status_code", None)
    if isinstance(exc, groq.RateLimitError) or status_code == 429:
        return UpstreamError(ErrorCode.UPSTREAM_RATE_LIMITED, message, 429)
    if isinstance(exc, (groq.PermissionDeniedError, groq.AuthenticationError)):
        return UpstreamError(
            ErrorCode.UPSTREAM_PERMISSION_DENIED, message, status_code
        )
    if status_code in (401, 403) or "model_permission_blocked" in message:
        return UpstreamError(
            ErrorCode.UPSTREAM_PERMISSION_DENIED, message, status_code
        )
    if isinstance(exc, groq.APIStatusError):
        return UpstreamError(ErrorCode.UPSTREAM_TRANSIENT, message, status_code)
    if isinstance(exc, (groq.APITimeoutError, groq.APIConnectionError)):
        return UpstreamError(ErrorCode.UPSTREAM_TRANSIENT, message)
    return UpstreamError(ErrorCode.UPSTREAM_TRANSIENT, message, status_code)


def _segment_value(segment: Any, key: str) -> Any:
    if isinstance(segment, dict):
        return segment.get(key)
    return getattr(segment, key, None)


def _no_speech_probs(response: Any) -> List[float]:
    segments = getattr(response, "segments", None)
    if segments is None and isinstance(response, dict):
        segments = response.get("segments")
    probs: List[float] = []
    for segment in segments or []:
        value = _segment_value(segment, "no_speech_prob")
        probs.append(float(value) if value is not None else 0.0)
    return probs


class GroqUpstreamClient:
    """One short-lived ``groq.Groq`` client per call, with SDK retries disabled."""

    def __init__(self, max_retries: int = 0) -> None:
        self._max_retries = max_retries

    def _client(self, api_key: str, timeout_sec: float) -> groq.Groq:
        return groq.Groq(
            api_key=api_key, timeout=timeout_sec, max_retries=self._max_retries
        )

    def probe(self, api_key: str, model: str, timeout_sec: float) -> None:
        try:
            self._client(api_key, timeout_sec).chat.completions.create(
                messages=[{"role": "user", "content": "hi"}],
                model=model,
                max_tokens=1,
                stream=False,
            )
        except Exception as exc:
            raise translate_error(exc) from exc

    def transcribe(
        self, api_key: str, request: TranscriptionRequest
    ) -> TranscriptionResponse:
        try:
            response = self._client(
                api_key, request.timeout_sec
            ).audio.transcriptions.create(
                file=("audio.wav", request.wav_bytes),
                model=request.model,
                language=request.language,
                response_format="verbose_json",
                temperature=request.temperature,
                prompt=request.prompt,
            )
        except Exception as exc:
            raise translate_error(exc) from exc
        text = getattr(response, "text", None)
        if text is None and isinstance(response, dict):
            text = response.get("text")
        language = getattr(response, "language", None) or ""
        return TranscriptionResponse(
            text=text or "",
            language=str(language),
            no_speech_probs=_no_speech_probs(response),
        )

    def stream_completion(
        self, api_key: str, request: CompletionRequest
    ) -> Iterator[str]:
        try:
            stream = self._client(
                api_key, request.timeout_sec
            ).chat.completions.create(
                messages=[message.as_dict() for message in request.messages],
                model=request.model,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                stream=True,
            )
        except Exception as exc:
            raise translate_error(exc) from exc
        try:
            for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except Exception as exc:
            raise translate_error(exc) from exc
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                try:
                    close()
                except Exception:
                    LOGGER.debug("Failed to close completion stream", exc_info=True)


__all__ = ["GroqUpstreamClient", "translate_error"]

"""Upstream speech-to-text and chat completion interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Protocol


@dataclass
class ChatMessage:
    role: str
    content: str

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class TranscriptionRequest:
    wav_bytes: bytes
    model: str
    language: str = "en"
    prompt: str = ""
    temperature: float = 0.0
    timeout_sec: float = 10.0


@dataclass
class TranscriptionResponse:
    text: str
    language: str = ""
    no_speech_probs: List[float] = field(default_factory=list)

    @property
    def average_no_speech_prob(self) -> Optional[float]:
        if not self.no_speech_probs:
            return None
        return sum(self.no_speech_probs) / len(self.no_speech_probs)


@dataclass
class CompletionRequest:
    messages: List[ChatMessage]
    model: str
    temperature: float = 0.2
    max_tokens: int = 2048
    timeout_sec: float = 15.0


class UpstreamClient(Protocol):
    """Calls made on behalf of one credential.

    Implementations raise ``copilot_server.errors.UpstreamError`` for every
    upstream failure so callers can apply the credential policy.
    """

    def probe(self, api_key: str, model: str, timeout_sec: float) -> None:
        """Issue a minimal one-token completion to verify the key for ``model``."""
        ...

    def transcribe(
        self, api_key: str, request: TranscriptionRequest
    ) -> TranscriptionResponse: ...

    def stream_completion(
        self, api_key: str, request: CompletionRequest
    ) -> Iterator[str]:
        """Yield content deltas as they arrive."""
        ...


__all__ = [
    "ChatMessage",
    "CompletionRequest",
    "TranscriptionRequest",
    "TranscriptionResponse",
    "UpstreamClient",
]

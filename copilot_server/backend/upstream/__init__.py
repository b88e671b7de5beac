"""Upstream speech and language model clients."""

from .base import (
    ChatMessage,
    CompletionRequest,
    TranscriptionRequest,
    TranscriptionResponse,
    UpstreamClient,
)

__all__ = [
    "ChatMessage",
    "CompletionRequest",
    "TranscriptionRequest",
    "TranscriptionResponse",
    "UpstreamClient",
]

"""Application layer for the answer server."""

from .answer_service import AnswerService, AnswerServiceSettings
from .generation import (
    GenerationOptions,
    GenerationPhase,
    GenerationPipeline,
    GenerationResult,
    GenerationSettings,
    GenerationStatus,
)
from .session_manager import CancelToken, Session, SessionParams, SessionStore
from .transcription import Transcript, TranscriptionPipeline, TranscriptionSettings

__all__ = [
    "AnswerService",
    "AnswerServiceSettings",
    "CancelToken",
    "GenerationOptions",
    "GenerationPhase",
    "GenerationPipeline",
    "GenerationResult",
    "GenerationSettings",
    "GenerationStatus",
    "Session",
    "SessionParams",
    "SessionStore",
    "Transcript",
    "TranscriptionPipeline",
    "TranscriptionSettings",
]

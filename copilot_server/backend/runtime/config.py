"""Runtime configuration models for the answer pipeline."""

from dataclasses import dataclass, field
from typing import Dict, Optional

from copilot_server.backend.application.answer_service import AnswerServiceSettings
from copilot_server.backend.application.generation import GenerationSettings
from copilot_server.backend.application.transcription import TranscriptionSettings
from copilot_server.backend.component.accumulator import AccumulatorSettings
from copilot_server.backend.component.credential_pool import CredentialPoolSettings
from copilot_server.backend.component.vad_gate import VADSettings
from copilot_server.config.default.pipeline import (
    DEFAULT_BLOCK_CACHE_PATH,
    DEFAULT_BUCKET_ENV,
    DEFAULT_MIN_WORDS,
)
from copilot_server.config.default.server import (
    DEFAULT_PERSIST_TURNS,
    DEFAULT_TURN_LOG_PATH,
)
from copilot_server.config.loader import ServerConfig


@dataclass
class CredentialRuntimeConfig:
    """Where credentials come from and where blocks are cached."""

    bucket_env: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_BUCKET_ENV))
    block_cache_path: Optional[str] = DEFAULT_BLOCK_CACHE_PATH
    pool: CredentialPoolSettings = field(default_factory=CredentialPoolSettings)


@dataclass
class PersistenceRuntimeConfig:
    enabled: bool = DEFAULT_PERSIST_TURNS
    path: str = DEFAULT_TURN_LOG_PATH


@dataclass
class RuntimeConfig:  # pylint: disable=too-many-instance-attributes
    """Settings objects for every pipeline component."""

    vad: VADSettings = field(default_factory=VADSettings)
    accumulator: AccumulatorSettings = field(default_factory=AccumulatorSettings)
    credentials: CredentialRuntimeConfig = field(default_factory=CredentialRuntimeConfig)
    transcription: TranscriptionSettings = field(default_factory=TranscriptionSettings)
    min_words: int = DEFAULT_MIN_WORDS
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    service: AnswerServiceSettings = field(default_factory=AnswerServiceSettings)
    persistence: PersistenceRuntimeConfig = field(
        default_factory=PersistenceRuntimeConfig
    )
    settings: Dict[str, str] = field(default_factory=dict)


def build_runtime_config(cfg: ServerConfig) -> RuntimeConfig:
    """Translate the flat server config into per-component settings."""
    return RuntimeConfig(
        vad=VADSettings(
            initial_noise_floor=cfg.vad_initial_noise_floor,
            min_threshold=cfg.vad_min_threshold,
            multiplier=cfg.vad_multiplier,
            adapt_ratio=cfg.vad_adapt_ratio,
            adapt_weight=cfg.vad_adapt_weight,
        ),
        accumulator=AccumulatorSettings(
            silence_timeout_sec=cfg.silence_timeout_sec,
            trailing_padding_frames=cfg.trailing_padding_frames,
            min_speech_frames=cfg.min_speech_frames,
            max_segment_frames=cfg.max_segment_frames,
        ),
        credentials=CredentialRuntimeConfig(
            bucket_env=dict(cfg.bucket_env),
            block_cache_path=cfg.block_cache_path,
            pool=CredentialPoolSettings(
                rate_limit_cooldown_sec=cfg.rate_limit_cooldown_sec,
                transient_cooldown_sec=cfg.transient_cooldown_sec,
                block_cooldown_sec=cfg.block_cooldown_sec,
                block_max_age_sec=cfg.block_max_age_sec,
                bucket_routes=dict(cfg.bucket_routes),
            ),
        ),
        transcription=TranscriptionSettings(
            model=cfg.transcription_model,
            language=cfg.transcription_language,
            timeout_sec=cfg.transcription_timeout_sec,
            max_attempts=cfg.transcription_max_attempts,
            no_speech_threshold=cfg.no_speech_threshold,
            duplicate_window_sec=cfg.duplicate_window_sec,
            sample_rate=cfg.sample_rate,
        ),
        min_words=cfg.min_words,
        generation=GenerationSettings(
            simple_model=cfg.simple_model,
            complex_model=cfg.complex_model,
            max_overall_attempts=cfg.max_overall_attempts,
            probe_timeout_sec=cfg.probe_timeout_sec,
            stream_timeout_sec=cfg.stream_timeout_sec,
            history_turns=cfg.history_turns,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            default_profile=cfg.default_profile,
        ),
        service=AnswerServiceSettings(
            segment_energy_check=cfg.segment_energy_check,
            worker_threads=cfg.worker_threads,
        ),
        persistence=PersistenceRuntimeConfig(
            enabled=cfg.persist_turns,
            path=cfg.turn_log_path,
        ),
        settings=dict(cfg.settings),
    )


__all__ = [
    "CredentialRuntimeConfig",
    "PersistenceRuntimeConfig",
    "RuntimeConfig",
    "build_runtime_config",
]

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from copilot_server import PROJECT_ROOT
from copilot_server.config.default import PIPELINE_SECTION_MAP, SERVER_SECTION_MAP
from copilot_server.config.default.pipeline import (
    DEFAULT_BLOCK_CACHE_PATH,
    DEFAULT_BLOCK_COOLDOWN_SEC,
    DEFAULT_BLOCK_MAX_AGE_SEC,
    DEFAULT_BUCKET_ENV,
    DEFAULT_BUCKET_ROUTES,
    DEFAULT_COMPLEX_MODEL,
    DEFAULT_DUPLICATE_WINDOW_SEC,
    DEFAULT_HISTORY_TURNS,
    DEFAULT_MAX_OVERALL_ATTEMPTS,
    DEFAULT_MAX_SEGMENT_FRAMES,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MIN_SPEECH_FRAMES,
    DEFAULT_MIN_WORDS,
    DEFAULT_NO_SPEECH_THRESHOLD,
    DEFAULT_PROBE_TIMEOUT_SEC,
    DEFAULT_PROFILE,
    DEFAULT_RATE_LIMIT_COOLDOWN_SEC,
    DEFAULT_SEGMENT_ENERGY_CHECK,
    DEFAULT_SILENCE_TIMEOUT_SEC,
    DEFAULT_SIMPLE_MODEL,
    DEFAULT_STREAM_TIMEOUT_SEC,
    DEFAULT_TEMPERATURE,
    DEFAULT_TRAILING_PADDING_FRAMES,
    DEFAULT_TRANSCRIPTION_LANGUAGE,
    DEFAULT_TRANSCRIPTION_MAX_ATTEMPTS,
    DEFAULT_TRANSCRIPTION_MODEL,
    DEFAULT_TRANSCRIPTION_TIMEOUT_SEC,
    DEFAULT_TRANSIENT_COOLDOWN_SEC,
    DEFAULT_VAD_ADAPT_RATIO,
    DEFAULT_VAD_ADAPT_WEIGHT,
    DEFAULT_VAD_INITIAL_NOISE_FLOOR,
    DEFAULT_VAD_MIN_THRESHOLD,
    DEFAULT_VAD_MULTIPLIER,
)
from copilot_server.config.default.server import (
    DEFAULT_HTTP_HOST,
    DEFAULT_HTTP_PORT,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_PERSIST_TURNS,
    DEFAULT_SAMPLE_RATE,
    DEFAULT_TRANSCRIPT_LOG_FILE,
    DEFAULT_TURN_LOG_PATH,
    DEFAULT_WORKER_THREADS,
    DEFAULT_WS_PORT,
)


@dataclass
class ServerConfig:
    http_host: str = DEFAULT_HTTP_HOST
    http_port: int = DEFAULT_HTTP_PORT
    ws_port: int = DEFAULT_WS_PORT
    worker_threads: int = DEFAULT_WORKER_THREADS
    sample_rate: int = DEFAULT_SAMPLE_RATE
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[str] = DEFAULT_LOG_FILE
    transcript_log_file: Optional[str] = DEFAULT_TRANSCRIPT_LOG_FILE
    persist_turns: bool = DEFAULT_PERSIST_TURNS
    turn_log_path: str = DEFAULT_TURN_LOG_PATH
    vad_initial_noise_floor: float = DEFAULT_VAD_INITIAL_NOISE_FLOOR
    vad_min_threshold: float = DEFAULT_VAD_MIN_THRESHOLD
    vad_multiplier: float = DEFAULT_VAD_MULTIPLIER
    vad_adapt_ratio: float = DEFAULT_VAD_ADAPT_RATIO
    vad_adapt_weight: float = DEFAULT_VAD_ADAPT_WEIGHT
    silence_timeout_sec: float = DEFAULT_SILENCE_TIMEOUT_SEC
    trailing_padding_frames: int = DEFAULT_TRAILING_PADDING_FRAMES
    min_speech_frames: int = DEFAULT_MIN_SPEECH_FRAMES
    max_segment_frames: int = DEFAULT_MAX_SEGMENT_FRAMES
    segment_energy_check: bool = DEFAULT_SEGMENT_ENERGY_CHECK
    rate_limit_cooldown_sec: float = DEFAULT_RATE_LIMIT_COOLDOWN_SEC
    transient_cooldown_sec: float = DEFAULT_TRANSIENT_COOLDOWN_SEC
    block_cooldown_sec: float = DEFAULT_BLOCK_COOLDOWN_SEC
    block_max_age_sec: float = DEFAULT_BLOCK_MAX_AGE_SEC
    block_cache_path: Optional[str] = DEFAULT_BLOCK_CACHE_PATH
    bucket_env: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_BUCKET_ENV)
    )
    bucket_routes: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_BUCKET_ROUTES)
    )
    transcription_model: str = DEFAULT_TRANSCRIPTION_MODEL
    transcription_language: str = DEFAULT_TRANSCRIPTION_LANGUAGE
    transcription_timeout_sec: float = DEFAULT_TRANSCRIPTION_TIMEOUT_SEC
    transcription_max_attempts: int = DEFAULT_TRANSCRIPTION_MAX_ATTEMPTS
    no_speech_threshold: float = DEFAULT_NO_SPEECH_THRESHOLD
    min_words: int = DEFAULT_MIN_WORDS
    duplicate_window_sec: float = DEFAULT_DUPLICATE_WINDOW_SEC
    simple_model: str = DEFAULT_SIMPLE_MODEL
    complex_model: str = DEFAULT_COMPLEX_MODEL
    max_overall_attempts: int = DEFAULT_MAX_OVERALL_ATTEMPTS
    probe_timeout_sec: float = DEFAULT_PROBE_TIMEOUT_SEC
    stream_timeout_sec: float = DEFAULT_STREAM_TIMEOUT_SEC
    history_turns: int = DEFAULT_HISTORY_TURNS
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    default_profile: str = DEFAULT_PROFILE
    settings: Dict[str, str] = field(default_factory=dict)


DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "server.yaml"

SECTION_MAP: Dict[str, Dict[str, str]] = dict(SERVER_SECTION_MAP)
SECTION_MAP.update(PIPELINE_SECTION_MAP)

_MAPPING_FIELDS = {"bucket_env", "bucket_routes"}


def load_config(path: Optional[Path] = None) -> ServerConfig:
    """Load configuration from YAML, falling back to defaults."""
    cfg = ServerConfig()
    data = _read_yaml(path or DEFAULT_CONFIG_PATH)
    if data:
        _apply_sections(cfg, data)
    return cfg


def _read_yaml(path: Optional[Path]) -> Optional[Dict[str, Any]]:
    if not path or not path.exists():
        return None
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if isinstance(data, dict):
        return data
    return None


def _apply_sections(cfg: ServerConfig, raw: Dict[str, Any]) -> None:
    field_names = {f.name for f in fields(ServerConfig)}
    for section, mapping in SECTION_MAP.items():
        data = raw.get(section)
        if not isinstance(data, dict):
            continue
        for key, attr in mapping.items():
            if key not in data or data[key] is None:
                continue
            if attr in _MAPPING_FIELDS:
                _apply_mapping(cfg, attr, data[key])
                continue
            setattr(cfg, attr, data[key])

    _apply_settings(cfg, raw.get("settings"))

    for key, value in raw.items():
        if key in SECTION_MAP or key == "settings":
            continue
        if key in field_names and value is not None:
            setattr(cfg, key, value)


def _apply_mapping(cfg: ServerConfig, attr: str, value: Any) -> None:
    if not isinstance(value, dict):
        return
    merged = dict(getattr(cfg, attr))
    for name, target in value.items():
        if target is None:
            merged.pop(str(name), None)
        else:
            merged[str(name)] = str(target)
    setattr(cfg, attr, merged)


def _apply_settings(cfg: ServerConfig, settings: Any) -> None:
    if not isinstance(settings, dict):
        return
    for key, value in settings.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        cfg.settings[str(key)] = str(value)


__all__ = [
    "ServerConfig",
    "DEFAULT_CONFIG_PATH",
    "load_config",
]

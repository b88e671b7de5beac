"""Default values for the VAD, segmenting, credential and model pipeline."""

from typing import Dict

# Voice activity gate (raw PCM16 RMS units)
DEFAULT_VAD_INITIAL_NOISE_FLOOR = 300.0
DEFAULT_VAD_MIN_THRESHOLD = 600.0
DEFAULT_VAD_MULTIPLIER = 2.5
DEFAULT_VAD_ADAPT_RATIO = 1.2
DEFAULT_VAD_ADAPT_WEIGHT = 0.05

# Segmenting (frames are ~250 ms at 16 kHz)
DEFAULT_SILENCE_TIMEOUT_SEC = 1.5
DEFAULT_TRAILING_PADDING_FRAMES = 2
DEFAULT_MIN_SPEECH_FRAMES = 2
DEFAULT_MAX_SEGMENT_FRAMES = 120
DEFAULT_SEGMENT_ENERGY_CHECK = True

# Credentials
DEFAULT_RATE_LIMIT_COOLDOWN_SEC = 60.0
DEFAULT_TRANSIENT_COOLDOWN_SEC = 10.0
DEFAULT_BLOCK_COOLDOWN_SEC = 24 * 60 * 60.0
DEFAULT_BLOCK_MAX_AGE_SEC = 20 * 60 * 60.0
DEFAULT_BLOCK_CACHE_PATH = "data/key_blocked_cache.json"
DEFAULT_BUCKET_ENV: Dict[str, str] = {
    "general": "GROQ_API_KEY",
    "70b": "GROQ_KEYS_70B",
    "8b": "GROQ_KEYS_8B",
}
DEFAULT_BUCKET_ROUTES: Dict[str, str] = {
    "70b": "70b",
    "8b": "8b",
    "whisper": "8b",
}

# Transcription
DEFAULT_TRANSCRIPTION_MODEL = "whisper-large-v3-turbo"
DEFAULT_TRANSCRIPTION_LANGUAGE = "en"
DEFAULT_TRANSCRIPTION_TIMEOUT_SEC = 10.0
DEFAULT_TRANSCRIPTION_MAX_ATTEMPTS = 10
DEFAULT_NO_SPEECH_THRESHOLD = 0.6
DEFAULT_MIN_WORDS = 2
DEFAULT_DUPLICATE_WINDOW_SEC = 5.0
DEFAULT_PROMPT_MAX_CHARS = 900
DEFAULT_PROMPT_CONTEXT_CHARS = 300

# Generation
DEFAULT_SIMPLE_MODEL = "llama-3.1-8b-instant"
DEFAULT_COMPLEX_MODEL = "llama-3.3-70b-versatile"
DEFAULT_MAX_OVERALL_ATTEMPTS = 3
DEFAULT_PROBE_TIMEOUT_SEC = 5.0
DEFAULT_STREAM_TIMEOUT_SEC = 15.0
DEFAULT_HISTORY_TURNS = 6
DEFAULT_HISTORY_ANSWER_CHARS = 1000
DEFAULT_TEMPERATURE = 0.2
DEFAULT_MAX_TOKENS = 2048
DEFAULT_PROFILE = "interview"

PIPELINE_SECTION_MAP: Dict[str, Dict[str, str]] = {
    "vad": {
        "initial_noise_floor": "vad_initial_noise_floor",
        "min_threshold": "vad_min_threshold",
        "multiplier": "vad_multiplier",
        "adapt_ratio": "vad_adapt_ratio",
        "adapt_weight": "vad_adapt_weight",
    },
    "segment": {
        "silence_timeout_sec": "silence_timeout_sec",
        "trailing_padding_frames": "trailing_padding_frames",
        "min_speech_frames": "min_speech_frames",
        "max_frames": "max_segment_frames",
        "energy_check": "segment_energy_check",
    },
    "credentials": {
        "rate_limit_cooldown_sec": "rate_limit_cooldown_sec",
        "transient_cooldown_sec": "transient_cooldown_sec",
        "block_cooldown_sec": "block_cooldown_sec",
        "block_max_age_sec": "block_max_age_sec",
        "block_cache_path": "block_cache_path",
        "bucket_env": "bucket_env",
        "bucket_routes": "bucket_routes",
    },
    "transcription": {
        "model": "transcription_model",
        "language": "transcription_language",
        "timeout_sec": "transcription_timeout_sec",
        "max_attempts": "transcription_max_attempts",
        "no_speech_threshold": "no_speech_threshold",
        "min_words": "min_words",
        "duplicate_window_sec": "duplicate_window_sec",
    },
    "generation": {
        "simple_model": "simple_model",
        "complex_model": "complex_model",
        "max_attempts": "max_overall_attempts",
        "probe_timeout_sec": "probe_timeout_sec",
        "stream_timeout_sec": "stream_timeout_sec",
        "history_turns": "history_turns",
        "temperature": "temperature",
        "max_tokens": "max_tokens",
        "default_profile": "default_profile",
    },
}


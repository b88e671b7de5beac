"""Default values for server/runtime configuration."""

from typing import Dict

DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8765
DEFAULT_WS_PORT = 8766
DEFAULT_WORKER_THREADS = 8
DEFAULT_SAMPLE_RATE = 16000
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = None
DEFAULT_TRANSCRIPT_LOG_FILE = None
DEFAULT_PERSIST_TURNS = False
DEFAULT_TURN_LOG_PATH = "data/turns.jsonl"

SERVER_SECTION_MAP: Dict[str, Dict[str, str]] = {
    "server": {
        "host": "http_host",
        "port": "http_port",
        "ws_port": "ws_port",
        "worker_threads": "worker_threads",
        "sample_rate": "sample_rate",
    },
    "logging": {
        "level": "log_level",
        "file": "log_file",
        "transcript_file": "transcript_log_file",
    },
    "persistence": {
        "enabled": "persist_turns",
        "path": "turn_log_path",
    },
}

__all__ = [
    "DEFAULT_HTTP_HOST",
    "DEFAULT_HTTP_PORT",
    "DEFAULT_WS_PORT",
    "DEFAULT_WORKER_THREADS",
    "DEFAULT_SAMPLE_RATE",
    "DEFAULT_LOG_LEVEL",
    "DEFAULT_LOG_FILE",
    "DEFAULT_TRANSCRIPT_LOG_FILE",
    "DEFAULT_PERSIST_TURNS",
    "DEFAULT_TURN_LOG_PATH",
    "SERVER_SECTION_MAP",
]

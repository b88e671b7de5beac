import argparse
import signal
import threading
from pathlib import Path

from copilot_server.backend.runtime import ApplicationRuntime, build_runtime_config
from copilot_server.backend.transport import start_http_server, start_ws_server
from copilot_server.config import DEFAULT_CONFIG_PATH, ServerConfig, load_config
from copilot_server.utils.logger import LOGGER, configure_logging


def serve(config: ServerConfig) -> None:
    """Launch the HTTP control and WebSocket audio servers."""
    runtime = ApplicationRuntime(build_runtime_config(config))
    server_state = {"ws_running": False}
    http_handle = start_http_server(
        runtime, server_state, host=config.http_host, port=config.http_port
    )
    ws_handle = start_ws_server(runtime, host=config.http_host, port=config.ws_port)
    server_state["ws_running"] = True
    LOGGER.info(
        "Answer server started (http=%s:%s, ws=%s:%s, simple=%s, complex=%s)",
        config.http_host,
        config.http_port,
        config.http_host,
        config.ws_port,
        config.simple_model,
        config.complex_model,
    )

    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        LOGGER.info("Received signal %s; shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    stop_event.wait()

    server_state["ws_running"] = False
    ws_handle.stop(timeout=5.0)
    http_handle.stop(timeout=5.0)
    runtime.shutdown()
    LOGGER.info("Answer server stopped")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Live answer pipeline server")
    parser.add_argument(
        "--config",
        type=str,
        help=f"Path to YAML config (default search: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--host", default=None, help="Interface to bind")
    parser.add_argument("--port", type=int, default=None, help="HTTP control port")
    parser.add_argument(
        "--ws-port", type=int, default=None, help="WebSocket audio port"
    )
    parser.add_argument(
        "--worker-threads",
        type=int,
        default=None,
        help="Threads shared by transcription and generation work",
    )
    parser.add_argument(
        "--profile",
        default=None,
        help="Default prompt profile (interview, sales, meeting, ...)",
    )
    parser.add_argument(
        "--simple-model", default=None, help="Model for short/simple questions"
    )
    parser.add_argument(
        "--complex-model", default=None, help="Model for long/technical questions"
    )
    parser.add_argument(
        "--transcription-model", default=None, help="Speech-to-text model id"
    )
    parser.add_argument(
        "--silence-timeout",
        type=float,
        default=None,
        help="Seconds of silence that close a speech segment",
    )
    parser.add_argument(
        "--block-cache",
        default=None,
        help="Path of the blocked-credential cache file",
    )
    parser.add_argument(
        "--persist-turns",
        dest="persist_turns",
        action="store_true",
        help="Append completed turns to the JSONL turn log",
    )
    parser.add_argument(
        "--no-persist-turns",
        dest="persist_turns",
        action="store_false",
        help="Disable turn persistence (overrides config)",
    )
    parser.set_defaults(persist_turns=None)
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. TRACE, DEBUG, INFO); overrides config",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional log file path; overrides config",
    )
    parser.add_argument(
        "--transcript-log-file",
        default=None,
        help="Opt-in file for transcripts and answers; overrides config",
    )
    return parser.parse_args()


def configure_from_args(args: argparse.Namespace) -> ServerConfig:
    config_arg_path = Path(args.config).expanduser() if args.config else None
    effective_config_path = config_arg_path or DEFAULT_CONFIG_PATH
    config = load_config(effective_config_path)

    if args.host is not None:
        config.http_host = args.host
    if args.port is not None:
        config.http_port = args.port
    if args.ws_port is not None:
        config.ws_port = args.ws_port
    if args.worker_threads is not None:
        config.worker_threads = args.worker_threads
    if args.profile is not None:
        config.default_profile = args.profile
    if args.simple_model is not None:
        config.simple_model = args.simple_model
    if args.complex_model is not None:
        config.complex_model = args.complex_model
    if args.transcription_model is not None:
        config.transcription_model = args.transcription_model
    if args.silence_timeout is not None:
        config.silence_timeout_sec = args.silence_timeout
    if args.block_cache is not None:
        config.block_cache_path = args.block_cache
    if args.persist_turns is not None:
        config.persist_turns = args.persist_turns
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.log_file is not None:
        config.log_file = args.log_file
    if args.transcript_log_file is not None:
        config.transcript_log_file = args.transcript_log_file

    configure_logging(config.log_level, config.log_file, config.transcript_log_file)
    if effective_config_path.exists():
        LOGGER.info("Loaded server config from %s", effective_config_path)
    else:
        LOGGER.info(
            "Server config file not found at %s; using defaults/CLI overrides",
            effective_config_path,
        )
    return config


def main() -> None:
    args = parse_args()
    config = configure_from_args(args)
    serve(config)


if __name__ == "__main__":
    main()

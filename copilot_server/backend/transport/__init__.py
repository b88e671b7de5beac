"""Transport layer helpers for the answer server."""

from .http_server import HttpServerHandle, build_http_app, start_http_server
from .ws_server import WebSocketServerHandle, build_ws_app, start_ws_server

__all__ = [
    "HttpServerHandle",
    "WebSocketServerHandle",
    "build_http_app",
    "build_ws_app",
    "start_http_server",
    "start_ws_server",
]

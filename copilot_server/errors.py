"""Centralized error codes and status mappings."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional


class ErrorCode(str, Enum):
    """Stable error identifiers surfaced to clients and logs."""

    # session (ERR100x)
    SESSION_ID_REQUIRED = "ERR1001"
    SESSION_NOT_FOUND = "ERR1002"
    AUDIO_FRAME_INVALID = "ERR1003"
    TEXT_MESSAGE_INVALID = "ERR1004"
    SESSION_PARAMS_INVALID = "ERR1005"

    # upstream (ERR200x)
    UPSTREAM_RATE_LIMITED = "ERR2001"
    UPSTREAM_PERMISSION_DENIED = "ERR2002"
    UPSTREAM_TRANSIENT = "ERR2003"
    NO_CREDENTIALS_CONFIGURED = "ERR2004"

    # pipeline outcomes (ERR300x)
    NO_USABLE_SPEECH = "ERR3001"
    ALL_CREDENTIALS_EXHAUSTED = "ERR3002"
    EMPTY_RESPONSE_EXHAUSTED = "ERR3003"
    GENERATION_CANCELLED = "ERR3004"
    GENERATION_BUSY = "ERR3005"

    # internal (ERR900x)
    UNEXPECTED = "ERR9001"


@dataclass(frozen=True)
class ErrorSpec:
    """Maps an error code to an HTTP status, message and visibility."""

    code: ErrorCode
    http_status: int
    message: str
    user_visible: bool = True


ERROR_SPECS: Final[dict[ErrorCode, ErrorSpec]] = {
    ErrorCode.SESSION_ID_REQUIRED: ErrorSpec(
        ErrorCode.SESSION_ID_REQUIRED, 400, "session_id is required"
    ),
    ErrorCode.SESSION_NOT_FOUND: ErrorSpec(
        ErrorCode.SESSION_NOT_FOUND, 404, "Unknown session_id"
    ),
    ErrorCode.AUDIO_FRAME_INVALID: ErrorSpec(
        ErrorCode.AUDIO_FRAME_INVALID, 400, "audio frame must be non-empty PCM16"
    ),
    ErrorCode.TEXT_MESSAGE_INVALID: ErrorSpec(
        ErrorCode.TEXT_MESSAGE_INVALID, 400, "Invalid text message"
    ),
    ErrorCode.SESSION_PARAMS_INVALID: ErrorSpec(
        ErrorCode.SESSION_PARAMS_INVALID, 400, "Invalid session parameters"
    ),
    ErrorCode.UPSTREAM_RATE_LIMITED: ErrorSpec(
        ErrorCode.UPSTREAM_RATE_LIMITED,
        429,
        "upstream rate limited the credential",
        user_visible=False,
    ),
    ErrorCode.UPSTREAM_PERMISSION_DENIED: ErrorSpec(
        ErrorCode.UPSTREAM_PERMISSION_DENIED,
        403,
        "credential is not permitted to use this model",
        user_visible=False,
    ),
    ErrorCode.UPSTREAM_TRANSIENT: ErrorSpec(
        ErrorCode.UPSTREAM_TRANSIENT,
        502,
        "transient upstream failure",
        user_visible=False,
    ),
    ErrorCode.NO_CREDENTIALS_CONFIGURED: ErrorSpec(
        ErrorCode.NO_CREDENTIALS_CONFIGURED, 503, "No API credentials configured"
    ),
    ErrorCode.NO_USABLE_SPEECH: ErrorSpec(
        ErrorCode.NO_USABLE_SPEECH, 204, "no usable speech", user_visible=False
    ),
    ErrorCode.ALL_CREDENTIALS_EXHAUSTED: ErrorSpec(
        ErrorCode.ALL_CREDENTIALS_EXHAUSTED, 503, "All AI Services Failed."
    ),
    ErrorCode.EMPTY_RESPONSE_EXHAUSTED: ErrorSpec(
        ErrorCode.EMPTY_RESPONSE_EXHAUSTED, 502, "AI Service Failed (Empty Response)"
    ),
    ErrorCode.GENERATION_CANCELLED: ErrorSpec(
        ErrorCode.GENERATION_CANCELLED,
        409,
        "generation cancelled",
        user_visible=False,
    ),
    ErrorCode.GENERATION_BUSY: ErrorSpec(
        ErrorCode.GENERATION_BUSY,
        409,
        "Busy: Generating response...",
        user_visible=False,
    ),
    ErrorCode.UNEXPECTED: ErrorSpec(ErrorCode.UNEXPECTED, 500, "Unexpected error"),
}


def spec_for(code: ErrorCode) -> ErrorSpec:
    """Return the ErrorSpec for a given error code."""
    return ERROR_SPECS[code]


def http_status_for(code: ErrorCode) -> int:
    """Return the HTTP status associated with an error code."""
    return ERROR_SPECS[code].http_status


def is_user_visible(code: ErrorCode) -> bool:
    """Return True when the error should be reported to the display surface."""
    return ERROR_SPECS[code].user_visible


def format_error(code: ErrorCode, detail: Optional[str] = None) -> str:
    """Format an error code and optional detail into a message."""
    spec = ERROR_SPECS[code]
    message = detail if detail else spec.message
    return f"{spec.code.value} {message}"


def http_payload_for(code: ErrorCode, detail: Optional[str] = None) -> dict[str, str]:
    """Build an HTTP error payload for a given error code."""
    spec = ERROR_SPECS[code]
    message = detail if detail else spec.message
    return {"code": spec.code.value, "message": message}


class CopilotError(RuntimeError):
    """Raised for application-defined errors with status metadata."""

    def __init__(self, code: ErrorCode, detail: Optional[str] = None) -> None:
        self.code = code
        self.http_status = http_status_for(code)
        self.detail = detail or ERROR_SPECS[code].message
        super().__init__(format_error(code, detail))


class UpstreamError(CopilotError):
    """Raised by upstream clients; ``code`` selects the credential policy."""

    def __init__(
        self,
        code: ErrorCode,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(code, detail)
        self.status_code = status_code

    @property
    def is_rate_limited(self) -> bool:
        return self.code == ErrorCode.UPSTREAM_RATE_LIMITED

    @property
    def is_permission_denied(self) -> bool:
        return self.code == ErrorCode.UPSTREAM_PERMISSION_DENIED


__all__ = [
    "CopilotError",
    "ErrorCode",
    "ErrorSpec",
    "ERROR_SPECS",
    "UpstreamError",
    "format_error",
    "http_payload_for",
    "http_status_for",
    "is_user_visible",
    "spec_for",
]

from types import SimpleNamespace

import groq
import httpx
import pytest

from copilot_server.backend.upstream import groq_client
from copilot_server.backend.upstream.base import (
    ChatMessage,
    CompletionRequest,
    TranscriptionRequest,
)
from copilot_server.backend.upstream.groq_client import (
    GroqUpstreamClient,
    translate_error,
)
from copilot_server.errors import ErrorCode, UpstreamError

_REQUEST = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")


def _status_error(cls, status, message="upstream said no"):
    """Helper for SDK status errors."""
    response = httpx.Response(status, request=_REQUEST)
    return cls(message, response=response, body=None)


@pytest.mark.parametrize(
    ("exc", "code", "status"),
    [
        (_status_error(groq.RateLimitError, 429), ErrorCode.UPSTREAM_RATE_LIMITED, 429),
        (
            _status_error(groq.PermissionDeniedError, 403),
            ErrorCode.UPSTREAM_PERMISSION_DENIED,
            403,
        ),
        (
            _status_error(groq.AuthenticationError, 401),
            ErrorCode.UPSTREAM_PERMISSION_DENIED,
            401,
        ),
        (
            _status_error(groq.BadRequestError, 400, "model_permission_blocked_project"),
            ErrorCode.UPSTREAM_PERMISSION_DENIED,
            400,
        ),
        (_status_error(groq.InternalServerError, 503), ErrorCode.UPSTREAM_TRANSIENT, 503),
        (_status_error(groq.BadRequestError, 400), ErrorCode.UPSTREAM_TRANSIENT, 400),
    ],
)
def test_translate_status_errors(exc, code, status):
    """Test translate status errors."""
    translated = translate_error(exc)

    assert translated.code == code
    assert translated.status_code == status


def test_translate_network_errors():
    """Test translate network errors."""
    timeout = translate_error(groq.APITimeoutError(request=_REQUEST))
    connection = translate_error(groq.APIConnectionError(request=_REQUEST))
    other = translate_error(ValueError("bad json"))

    assert timeout.code == ErrorCode.UPSTREAM_TRANSIENT
    assert connection.code == ErrorCode.UPSTREAM_TRANSIENT
    assert other.code == ErrorCode.UPSTREAM_TRANSIENT
    assert other.detail == "bad json"


def test_translate_passes_upstream_error_through():
    """Test translate passes upstream error through."""
    original = UpstreamError(ErrorCode.UPSTREAM_RATE_LIMITED, "slow down")

    assert translate_error(original) is original


class _FakeGroq:
    """Helper standing in for ``groq.Groq``; records constructor and call kwargs."""

    instances = []
    completion_result = None
    transcription_result = None
    error = None

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.calls = []
        _FakeGroq.instances.append(self)
        self.chat = SimpleNamespace(
            completions=SimpleNamespace(create=self._record(lambda: _FakeGroq.completion_result))
        )
        self.audio = SimpleNamespace(
            transcriptions=SimpleNamespace(
                create=self._record(lambda: _FakeGroq.transcription_result)
            )
        )

    def _record(self, result):
        def _create(**kwargs):
            self.calls.append(kwargs)
            if _FakeGroq.error is not None:
                raise _FakeGroq.error
            return result()

        return _create


class _Stream:
    """Helper for an SDK chunk stream."""

    def __init__(self, chunks, fail_after=None):
        self._chunks = chunks
        self._fail_after = fail_after
        self.closed = False

    def __iter__(self):
        for index, chunk in enumerate(self._chunks):
            if self._fail_after is not None and index == self._fail_after:
                raise _status_error(groq.RateLimitError, 429)
            yield chunk

    def close(self):
        self.closed = True


def _chunk(content):
    """Helper for one streamed delta."""
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


@pytest.fixture
def fake_groq(monkeypatch):
    _FakeGroq.instances = []
    _FakeGroq.completion_result = None
    _FakeGroq.transcription_result = None
    _FakeGroq.error = None
    monkeypatch.setattr(groq_client.groq, "Groq", _FakeGroq)
    return _FakeGroq


def _completion_request():
    """Helper for a two-message completion request."""
    return CompletionRequest(
        messages=[ChatMessage("system", "be brief"), ChatMessage("user", "hi")],
        model="llama-3.1-8b-instant",
        timeout_sec=7.0,
    )


def test_stream_completion_yields_content(fake_groq):
    """Test stream completion yields content."""
    stream = _Stream(
        [_chunk("Hel"), SimpleNamespace(choices=[]), _chunk(None), _chunk("lo")]
    )
    fake_groq.completion_result = stream

    tokens = list(GroqUpstreamClient().stream_completion("key-a", _completion_request()))

    assert tokens == ["Hel", "lo"]
    assert stream.closed is True
    instance = fake_groq.instances[0]
    assert instance.kwargs == {"api_key": "key-a", "timeout": 7.0, "max_retries": 0}
    call = instance.calls[0]
    assert call["stream"] is True
    assert call["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]


def test_stream_completion_errors_are_translated(fake_groq):
    """Test stream completion errors are translated."""
    fake_groq.error = _status_error(groq.PermissionDeniedError, 403)

    stream = GroqUpstreamClient().stream_completion("key-a", _completion_request())
    with pytest.raises(UpstreamError) as excinfo:
        next(stream)

    assert excinfo.value.code == ErrorCode.UPSTREAM_PERMISSION_DENIED


def test_stream_failure_mid_iteration_is_translated(fake_groq):
    """Test stream failure mid iteration is translated."""
    stream = _Stream([_chunk("a"), _chunk("b")], fail_after=1)
    fake_groq.completion_result = stream
    received = []

    with pytest.raises(UpstreamError) as excinfo:
        for token in GroqUpstreamClient().stream_completion("key-a", _completion_request()):
            received.append(token)

    assert received == ["a"]
    assert excinfo.value.is_rate_limited
    assert stream.closed is True


def test_transcribe_maps_verbose_json(fake_groq):
    """Test transcribe maps verbose json."""
    fake_groq.transcription_result = SimpleNamespace(
        text="what is docker",
        language="english",
        segments=[{"no_speech_prob": 0.1}, SimpleNamespace(no_speech_prob=0.3)],
    )
    request = TranscriptionRequest(
        wav_bytes=b"RIFF....", model="whisper-large-v3-turbo", prompt="Keywords"
    )

    response = GroqUpstreamClient().transcribe("key-b", request)

    assert response.text == "what is docker"
    assert response.language == "english"
    assert response.no_speech_probs == [0.1, 0.3]
    assert response.average_no_speech_prob == pytest.approx(0.2)
    call = fake_groq.instances[0].calls[0]
    assert call["file"] == ("audio.wav", b"RIFF....")
    assert call["response_format"] == "verbose_json"
    assert call["prompt"] == "Keywords"


def test_transcribe_errors_are_translated(fake_groq):
    """Test transcribe errors are translated."""
    fake_groq.error = _status_error(groq.RateLimitError, 429)
    request = TranscriptionRequest(wav_bytes=b"", model="whisper-large-v3-turbo")

    with pytest.raises(UpstreamError) as excinfo:
        GroqUpstreamClient().transcribe("key-b", request)

    assert excinfo.value.is_rate_limited


def test_probe_requests_one_token(fake_groq):
    """Test probe requests one token."""
    GroqUpstreamClient().probe("key-c", "llama-3.3-70b-versatile", 5.0)

    instance = fake_groq.instances[0]
    assert instance.kwargs["timeout"] == 5.0
    assert instance.calls[0]["max_tokens"] == 1
    assert instance.calls[0]["model"] == "llama-3.3-70b-versatile"


def test_probe_errors_are_translated(fake_groq):
    """Test probe errors are translated."""
    fake_groq.error = groq.APITimeoutError(request=_REQUEST)

    with pytest.raises(UpstreamError) as excinfo:
        GroqUpstreamClient().probe("key-c", "llama-3.3-70b-versatile", 5.0)

    assert excinfo.value.code == ErrorCode.UPSTREAM_TRANSIENT

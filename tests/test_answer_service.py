import pytest

from copilot_server.backend.application.generation import GenerationStatus
from copilot_server.backend.application.prompts import VOICE_MODE_SUFFIX
from copilot_server.backend.upstream.base import TranscriptionResponse
from copilot_server.config.default.server import DEFAULT_SAMPLE_RATE
from copilot_server.errors import CopilotError, ErrorCode
from copilot_server.utils.audio import pcm16_to_wav
from fakes import LOUD, QUIET, DeferredExecutor, pcm_frame

QUESTION = "what is a binary search tree"
ANSWER = "- It is a sorted tree."


def test_speech_to_answer_end_to_end(harness):
    """Test speech to answer end to end."""
    harness.speak("s1")
    assert harness.client.transcribe_calls == []

    harness.fire_silence()

    assert len(harness.client.transcribe_calls) == 1
    assert harness.renderer.of("status") == [
        "Verifying key (general#2)...",
        "Thinking (general#2)...",
        "Listening...",
    ]
    assert "".join(harness.renderer.of("token")) == ANSWER
    assert harness.renderer.of("final") == [ANSWER]
    session = harness.store.get("s1")
    assert [(turn.user_text, turn.answer_text) for turn in session.history] == [
        (QUESTION, ANSWER)
    ]
    assert session.audio_buffer == []
    assert harness.persistence.turns == [("s1", QUESTION, ANSWER)]
    request = harness.client.completion_calls[0][1]
    assert request.messages[0].content.endswith(VOICE_MODE_SUFFIX)
    snapshot = harness.metrics.snapshot()
    assert snapshot["frames_total"] == 5
    assert snapshot["segments_flushed"] == 1
    assert snapshot["generations"] == {"completed": 1}


def test_silence_alone_produces_nothing(harness):
    """Test silence alone produces nothing."""
    for _ in range(10):
        harness.service.ingest_audio_frame("s1", QUIET)

    assert harness.timers.timers == []
    assert harness.store.get("s1").audio_buffer == []
    assert harness.renderer.events == []


def test_barge_in_cancels_generation_and_keeps_new_speech(harness):
    """Test barge in cancels generation and keeps new speech."""
    harness.client.completions = [["t1 ", "t2 ", "t3 ", "t4 ", "t5"]]

    def _interrupt(index, _token):
        """Helper for the user speaking over the answer."""
        if index == 2:
            decision = harness.service.ingest_audio_frame("s1", LOUD)
            assert decision.barge_in is True

    harness.client.on_token = _interrupt
    harness.speak("s1")
    harness.fire_silence()

    assert harness.renderer.of("token") == ["t1 ", "t2 "]
    assert harness.renderer.of("final") == []
    session = harness.store.get("s1")
    assert session.history == []
    assert session.is_generating is False
    assert session.audio_buffer == [LOUD]
    assert session.cancel_requested is False
    snapshot = harness.metrics.snapshot()
    assert snapshot["barge_ins"] == 1
    assert snapshot["generations"] == {"cancelled": 1}


def test_stale_timer_flushes_nothing(harness):
    """Test stale timer flushes nothing."""
    harness.service.ingest_audio_frame("s1", LOUD)
    harness.service.ingest_audio_frame("s1", LOUD)
    harness.service.ingest_audio_frame("s1", QUIET)
    stale = harness.timers.last

    harness.service.stop_session("s1")
    harness.service.ingest_audio_frame("s1", LOUD)
    harness.service.ingest_audio_frame("s1", LOUD)
    stale.fire()

    assert harness.client.transcribe_calls == []
    assert len(harness.store.get("s1").audio_buffer) == 2


def test_timer_for_closed_session_is_ignored(harness):
    """Test timer for closed session is ignored."""
    harness.speak("s1")
    assert harness.service.close_session("s1") is True

    harness.fire_silence()

    assert harness.client.transcribe_calls == []
    assert harness.store.get("s1") is None


def test_low_energy_segment_dropped(harness):
    """Test low energy segment dropped."""
    for frame in (pcm_frame(800), pcm_frame(800), QUIET, QUIET):
        harness.service.ingest_audio_frame("s1", frame)

    harness.fire_silence()

    assert harness.client.transcribe_calls == []
    assert harness.metrics.snapshot()["segments_dropped"] == {"low_energy": 1}


def test_filtered_transcript_is_final(harness):
    """Test filtered transcript is final."""
    harness.client.transcripts = ["Thank you."]

    harness.speak("s1")
    harness.fire_silence()

    assert len(harness.client.transcribe_calls) == 1
    assert harness.client.completion_calls == []
    assert harness.renderer.events == []


def test_non_english_transcript_is_not_answered(harness):
    """Test non english transcript is not answered."""
    harness.client.transcripts = [
        TranscriptionResponse(
            text="que es un arbol binario", language="spanish", no_speech_probs=[0.01]
        )
    ]

    harness.speak("s1")
    harness.fire_silence()

    assert len(harness.client.transcribe_calls) == 1
    assert harness.client.completion_calls == []
    assert harness.metrics.snapshot()["transcripts_filtered"] == {"non_english": 1}


def test_leading_silence_and_padding_shape_one_segment(harness):
    """Test leading silence and padding shape one segment."""
    for frame in [QUIET] * 5 + [LOUD] * 3 + [QUIET] * 6:
        harness.service.ingest_audio_frame("s1", frame)

    assert len(harness.timers.timers) == 1
    harness.fire_silence()

    assert len(harness.client.transcribe_calls) == 1
    request = harness.client.transcribe_calls[0][1]
    assert request.wav_bytes == pcm16_to_wav(LOUD * 3 + QUIET * 2, DEFAULT_SAMPLE_RATE)
    assert harness.metrics.snapshot()["segments_flushed"] == 1


def test_repeated_question_is_answered_once(harness):
    """Test repeated question is answered once."""
    harness.speak("s1")
    harness.fire_silence()
    harness.speak("s1")
    harness.fire_silence()

    assert len(harness.client.transcribe_calls) == 2
    assert len(harness.client.completion_calls) == 1
    assert harness.renderer.of("final") == [ANSWER]
    assert harness.metrics.snapshot()["transcripts_filtered"] == {"duplicate": 1}


def test_manual_mode_buffers_until_trigger(harness):
    """Test manual mode buffers until trigger."""
    assert harness.service.set_manual_mode("s1", True) is True
    harness.client.transcripts = [QUESTION, "how does it stay balanced"]

    harness.speak("s1")
    harness.fire_silence()
    harness.speak("s1")
    harness.fire_silence()

    assert harness.client.completion_calls == []
    assert harness.renderer.of("partial") == [
        QUESTION,
        QUESTION + " how does it stay balanced",
    ]

    future = harness.service.trigger_manual_flush("s1")

    assert future.result().ok
    request = harness.client.completion_calls[0][1]
    assert request.messages[-1].content == QUESTION + " how does it stay balanced"
    assert request.messages[0].content.endswith(VOICE_MODE_SUFFIX)
    statuses = harness.renderer.of("status")
    assert statuses[0] == "Manual Mode (F2 to Answer, F4 to Auto)"
    assert "Answer Triggered (Reverting to Auto Mode)" in statuses
    session = harness.store.get("s1")
    assert session.manual_mode is False
    assert session.manual_buffer == ""


def test_trigger_transcribes_pending_audio_first(harness):
    """Test trigger transcribes pending audio first."""
    harness.service.set_manual_mode("s1", True)
    harness.speak("s1")

    future = harness.service.trigger_manual_flush("s1")

    assert future is not None
    assert future.result().ok
    assert harness.client.completion_calls[0][1].messages[-1].content == QUESTION


def test_trigger_with_empty_buffer(harness):
    """Test trigger with empty buffer."""
    harness.service.set_manual_mode("s1", True)

    assert harness.service.trigger_manual_flush("s1") is None
    assert harness.renderer.of("status")[-1] == "Buffer Empty! (Speak first, then F2)"
    assert harness.store.get("s1").manual_mode is True


def test_switching_mode_clears_manual_buffer(harness):
    """Test switching mode clears manual buffer."""
    harness.service.set_manual_mode("s1", True)
    harness.speak("s1")
    harness.fire_silence()
    assert harness.store.get("s1").manual_buffer.strip() == QUESTION

    harness.service.set_manual_mode("s1", False)

    assert harness.store.get("s1").manual_buffer == ""
    assert harness.renderer.of("status")[-1] == "Auto Mode"


def test_stop_cancels_inflight_generation(harness):
    """Test stop cancels inflight generation."""
    stopped = []

    def _stop(index, _token):
        """Helper for a stop request while streaming."""
        if index == 1:
            stopped.append(harness.service.stop_session("s1"))

    harness.client.on_token = _stop
    future = harness.service.ingest_text_message("s1", QUESTION)

    assert stopped == [True]
    assert future.result().status == GenerationStatus.CANCELLED
    assert harness.renderer.of("final") == []
    assert "Stopped" in harness.renderer.of("status")
    assert harness.store.get("s1").history == []


def test_stop_discards_buffered_audio(harness):
    """Test stop discards buffered audio."""
    harness.speak("s1")

    assert harness.service.stop_session("s1") is False

    session = harness.store.get("s1")
    assert session.audio_buffer == []
    assert session.cancel_requested is True
    assert harness.timers.last.cancelled is True


def test_text_after_stop_waits_for_start(harness):
    """Test text after stop waits for start."""
    harness.service.stop_session("s1")

    skipped = harness.service.ingest_text_message("s1", QUESTION)
    assert skipped.result().status == GenerationStatus.CANCELLED
    assert harness.client.completion_calls == []

    harness.service.start_session("s1")
    done = harness.service.ingest_text_message("s1", QUESTION)
    assert done.result().ok


def test_speech_after_stop_resumes(harness):
    """Test speech after stop resumes."""
    harness.service.stop_session("s1")

    harness.speak("s1")
    harness.fire_silence()

    assert harness.renderer.of("final") == [ANSWER]


def test_text_message_answers_without_voice_suffix(harness):
    """Test text message answers without voice suffix."""
    future = harness.service.ingest_text_message(
        "s1", QUESTION + " with examples", condensed_text="bst"
    )

    result = future.result()
    assert result.ok
    system = harness.client.completion_calls[0][1].messages[0].content
    assert not system.endswith(VOICE_MODE_SUFFIX)
    assert harness.store.get("s1").history[0].user_text == "bst"


def test_text_message_while_generating_is_skipped(harness):
    """Test text message while generating is skipped."""
    nested = []

    def _second_message(index, _token):
        """Helper for a message arriving while an answer streams."""
        if index == 0:
            nested.append(harness.service.ingest_text_message("s1", "another question"))

    harness.client.on_token = _second_message

    first = harness.service.ingest_text_message("s1", QUESTION)

    assert first.result().ok
    assert nested[0].result().status == GenerationStatus.SKIPPED
    assert "Busy: Generating response..." in harness.renderer.of("status")
    assert len(harness.store.get("s1").history) == 1


def test_text_message_validation(harness):
    """Test text message validation."""
    with pytest.raises(CopilotError) as excinfo:
        harness.service.ingest_text_message("s1", "   ")
    assert excinfo.value.code == ErrorCode.TEXT_MESSAGE_INVALID

    with pytest.raises(CopilotError) as excinfo:
        harness.service.ingest_text_message("", QUESTION)
    assert excinfo.value.code == ErrorCode.SESSION_ID_REQUIRED


def test_audio_frame_validation(harness):
    """Test audio frame validation."""
    for frame in (b"", b"\x01\x02\x03"):
        with pytest.raises(CopilotError) as excinfo:
            harness.service.ingest_audio_frame("s1", frame)
        assert excinfo.value.code == ErrorCode.AUDIO_FRAME_INVALID

    with pytest.raises(CopilotError) as excinfo:
        harness.service.ingest_audio_frame("", LOUD)
    assert excinfo.value.code == ErrorCode.SESSION_ID_REQUIRED


def test_start_session_applies_params(harness):
    """Test start session applies params."""
    snapshot = harness.service.start_session(
        "s1", profile="sales", resume_context="Ten years in SaaS", history_enabled=True
    )

    assert snapshot["profile"] == "sales"
    session = harness.store.get("s1")
    assert session.params.resume_context == "Ten years in SaaS"
    assert session.params.history_enabled is True

    with pytest.raises(CopilotError) as excinfo:
        harness.service.start_session("s1", colour="blue")
    assert excinfo.value.code == ErrorCode.SESSION_PARAMS_INVALID


def test_new_session_clears_history(harness):
    """Test new session clears history."""
    harness.service.start_session("s1", profile="meeting")
    harness.service.ingest_text_message("s1", QUESTION).result()

    snapshot = harness.service.new_session("s1")

    assert snapshot["history"] == []
    assert snapshot["profile"] == "meeting"


def test_session_snapshot_and_close(harness):
    """Test session snapshot and close."""
    harness.service.start_session("s1")
    assert harness.service.session_snapshot("s1")["session_id"] == "s1"

    assert harness.service.close_session("s1") is True
    assert harness.service.close_session("s1") is False
    with pytest.raises(CopilotError) as excinfo:
        harness.service.session_snapshot("s1")
    assert excinfo.value.code == ErrorCode.SESSION_NOT_FOUND


def test_sessions_are_isolated(harness):
    """Test sessions are isolated."""
    harness.service.set_manual_mode("manual-user", True)

    harness.speak("manual-user")
    harness.fire_silence()
    harness.speak("auto-user")
    harness.fire_silence()

    assert [sid for kind, sid, _ in harness.renderer.events if kind == "final"] == [
        "auto-user"
    ]
    assert harness.store.get("manual-user").manual_buffer.strip() == QUESTION
    assert harness.store.get("manual-user").history == []
    assert len(harness.store.get("auto-user").history) == 1


def test_segments_run_on_executor(make_harness):
    """Test segments run on executor."""
    executor = DeferredExecutor()
    harness = make_harness(executor=executor)

    harness.speak("s1")
    harness.fire_silence()

    assert harness.client.transcribe_calls == []
    assert len(executor.pending) == 1

    executor.run_all()

    assert harness.renderer.of("final") == [ANSWER]

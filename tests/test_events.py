"""
Tests for upstream event classification and client message builders.
"""

import pytest

from src.relay.errors import ProtocolParseError
from src.relay.events import (
    AudioChunk,
    UpstreamEventKind,
    audio_delta_event,
    audio_done_event,
    classify,
    error_event,
    parse_message,
    ready_event,
)


class TestClassification:
    """Every upstream event maps to exactly one kind."""

    @pytest.mark.parametrize("event_type", [
        "response.audio_transcript.delta",
        "response.output_audio_transcript.delta",
        "response.text.delta",
        "response.output_text.delta",
    ])
    def test_transcript_deltas(self, event_type):
        event = classify({"type": event_type, "delta": "Hola"})
        assert event.kind is UpstreamEventKind.TRANSCRIPT_DELTA
        assert event.delta == "Hola"

    @pytest.mark.parametrize("event_type", [
        "response.audio_transcript.done",
        "response.output_audio_transcript.done",
        "response.text.done",
        "response.done",
    ])
    def test_completion_events(self, event_type):
        assert classify({"type": event_type}).kind is UpstreamEventKind.TRANSCRIPT_DONE

    @pytest.mark.parametrize("event_type", [
        "response.audio.delta",
        "response.output_audio.delta",
        "response.output_audio.done",
    ])
    def test_raw_audio_is_its_own_kind(self, event_type):
        assert classify({"type": event_type, "delta": "AAAA"}).kind is UpstreamEventKind.AUDIO

    def test_response_created(self):
        assert classify({"type": "response.created"}).kind is UpstreamEventKind.RESPONSE_CREATED

    @pytest.mark.parametrize("event_type", [
        "session.created",
        "input_audio_buffer.speech_started",
        "error",
        "some.future.event",
    ])
    def test_everything_else_is_status(self, event_type):
        assert classify({"type": event_type}).kind is UpstreamEventKind.STATUS

    def test_missing_type_is_status(self):
        event = classify({})
        assert event.type == "unknown"
        assert event.kind is UpstreamEventKind.STATUS

    def test_delta_only_for_transcript_events(self):
        assert classify({"type": "response.audio.delta", "delta": "AAAA"}).delta == ""

    def test_error_message(self):
        event = classify({"type": "error", "error": {"message": "bad request"}})
        assert event.error_message == "bad request"
        assert classify({"type": "session.created"}).error_message is None


class TestParseMessage:
    def test_valid_object(self):
        assert parse_message('{"type": "init"}', "client") == {"type": "init"}

    def test_invalid_json(self):
        with pytest.raises(ProtocolParseError, match="client"):
            parse_message("{not json", "client")

    def test_non_object(self):
        with pytest.raises(ProtocolParseError, match="JSON object"):
            parse_message("[1, 2]", "OpenAI")


class TestClientMessages:
    def test_ready(self):
        assert ready_event("abc") == {"type": "session.ready", "session_id": "abc"}

    def test_audio_delta_keeps_payload(self):
        chunk = AudioChunk(audio="UklGRg==")
        assert audio_delta_event(chunk) == {"type": "audio.delta", "audio": "UklGRg==", "source": "tts"}

    def test_audio_done(self):
        assert audio_done_event() == {"type": "audio.done", "source": "tts"}

    def test_error_has_only_type_and_message(self):
        assert error_event("boom") == {"type": "error", "message": "boom"}

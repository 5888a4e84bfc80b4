"""
Tests for the conversation WebSocket protocol.
"""

import json

import pytest

from src.assistant.models import (
    ConversationPhase,
    ConversationSnapshot,
    ConversationType,
    Message,
    TranscriptEvent,
)
from src.assistant.session_protocol import (
    ClientEventType,
    HelloEvent,
    SpeakResultEvent,
    create_capture_start_message,
    create_speak_cancel_message,
    create_speak_message,
    create_snapshot_message,
    parse_client_message,
)


class TestParseClientMessage:
    def test_hello(self):
        event_type, event = parse_client_message(
            json.dumps({"type": "hello", "capture_supported": True, "synthesis_supported": True})
        )
        assert event_type == ClientEventType.HELLO
        assert event == HelloEvent(capture_supported=True, synthesis_supported=True, fallback_supported=False)

    def test_transcript(self):
        event_type, event = parse_client_message(
            json.dumps({"type": "transcript", "text": "What is fever?", "is_final": True, "confidence": "0.9"})
        )
        assert event_type == ClientEventType.TRANSCRIPT
        assert isinstance(event, TranscriptEvent)
        assert event.text == "What is fever?"
        assert event.is_final is True
        assert event.confidence == pytest.approx(0.9)

    def test_transcript_bad_confidence_dropped(self):
        _, event = parse_client_message(json.dumps({"type": "transcript", "text": "x", "confidence": "high"}))
        assert event.confidence is None
        assert event.is_final is False

    def test_null_text_is_empty(self):
        _, event = parse_client_message('{"type": "transcript", "text": null, "is_final": true}')
        assert event.text == ""
        assert event.is_final is True

        assert parse_client_message('{"type": "send_text", "text": null}') == (ClientEventType.SEND_TEXT, "")
        assert parse_client_message('{"type": "send_text", "text": 42}') == (ClientEventType.SEND_TEXT, "")

    def test_flags_must_be_json_booleans(self):
        _, event = parse_client_message('{"type": "transcript", "text": "hi", "is_final": "false"}')
        assert event.is_final is False

        _, hello = parse_client_message('{"type": "hello", "capture_supported": "true", "synthesis_supported": 1}')
        assert hello == HelloEvent(capture_supported=False, synthesis_supported=False, fallback_supported=False)

        assert parse_client_message('{"type": "mute", "muted": "no"}') == (ClientEventType.MUTE, True)

    def test_speak_result_null_fields(self):
        with pytest.raises(ValueError):
            parse_client_message('{"type": "speak_done", "id": null}')

        _, event = parse_client_message('{"type": "speak_done", "id": "u1", "engine": null}')
        assert event.engine == "primary"

    def test_speak_results(self):
        _, done = parse_client_message(json.dumps({"type": "speak_done", "id": "abc", "engine": "fallback"}))
        assert done == SpeakResultEvent(utterance_id="abc", engine="fallback", error=None)

        _, failed = parse_client_message(json.dumps({"type": "speak_error", "id": "abc"}))
        assert failed.error == "unknown error"
        assert failed.engine == "primary"

    def test_speak_result_requires_id(self):
        with pytest.raises(ValueError):
            parse_client_message(json.dumps({"type": "speak_done"}))

    def test_settings(self):
        assert parse_client_message('{"type": "send_text", "text": "hi"}') == (ClientEventType.SEND_TEXT, "hi")
        assert parse_client_message('{"type": "mute", "muted": false}') == (ClientEventType.MUTE, False)
        assert parse_client_message('{"type": "continuous", "enabled": true}') == (ClientEventType.CONTINUOUS, True)
        assert parse_client_message('{"type": "language", "language": "ta"}') == (ClientEventType.LANGUAGE, "ta")

    def test_language_requires_tag(self):
        with pytest.raises(ValueError):
            parse_client_message('{"type": "language"}')

    def test_bytes_accepted(self):
        event_type, _ = parse_client_message(b'{"type": "close"}')
        assert event_type == ClientEventType.CLOSE

    def test_invalid_messages(self):
        with pytest.raises(ValueError):
            parse_client_message("not json")
        with pytest.raises(ValueError):
            parse_client_message("[1, 2]")
        with pytest.raises(ValueError):
            parse_client_message('{"type": "dance"}')


class TestServerMessages:
    def test_snapshot_message(self):
        snapshot = ConversationSnapshot(
            version=3,
            phase=ConversationPhase.THINKING,
            language="en-IN",
            muted=False,
            continuous_voice=True,
            conversation_type=ConversationType.PATIENT_HISTORY,
            pending_transcript="",
            messages=(Message.assistant("Hello!"), Message.user("I have a cough")),
            draft="When",
            capture_supported=True,
            synthesis_supported=False,
            last_error=None,
            progress=10.0,
        )

        message = json.loads(create_snapshot_message(snapshot))

        assert message["type"] == "snapshot"
        body = message["snapshot"]
        assert body["phase"] == "thinking"
        assert body["conversation_type"] == "patient-history"
        assert body["messages"] == [
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "I have a cough"},
        ]
        assert body["draft"] == "When"
        assert body["progress"] == 10.0
        assert body["closed"] is False

    def test_speech_messages(self):
        assert json.loads(create_capture_start_message("hi-IN")) == {"type": "capture_start", "language": "hi-IN"}
        assert json.loads(create_speak_message("u1", "Hi", "en-IN", "primary")) == {
            "type": "speak",
            "id": "u1",
            "text": "Hi",
            "language": "en-IN",
            "engine": "primary",
        }
        assert json.loads(create_speak_cancel_message("u1", "fallback")) == {
            "type": "speak_cancel",
            "id": "u1",
            "engine": "fallback",
        }

"""
Tests for the per-connection conversation session and browser speech bridge.
"""

import json

import pytest

from src.assistant.models import ConversationPhase
from src.assistant.session import ConversationSession


class Outbox:
    """Collects messages the session sends to the browser."""

    def __init__(self):
        self.messages = []

    async def __call__(self, message: str) -> None:
        self.messages.append(json.loads(message))

    def of_type(self, message_type: str) -> list:
        return [m for m in self.messages if m["type"] == message_type]

    def last_snapshot(self) -> dict:
        return self.of_type("snapshot")[-1]["snapshot"]


def hello(capture: bool = True, synthesis: bool = True, fallback: bool = True) -> str:
    return json.dumps({
        "type": "hello",
        "capture_supported": capture,
        "synthesis_supported": synthesis,
        "fallback_supported": fallback,
    })


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def make_session(outbox, chat_client, fast_config):
    def factory(**kwargs) -> ConversationSession:
        return ConversationSession(outbox, config=fast_config, chat_client=chat_client, **kwargs)

    return factory


class TestConversationSession:
    @pytest.mark.asyncio
    async def test_messages_before_hello_rejected(self, make_session, outbox):
        session = make_session()

        await session.handle_message('{"type": "send_text", "text": "hi"}')

        assert outbox.of_type("error") == [{"type": "error", "message": "hello required"}]
        assert session.orchestrator is None

    @pytest.mark.asyncio
    async def test_hello_opens_conversation_with_greeting(self, make_session, outbox, eventually):
        session = make_session(conversation_type="patient-history", language="hi")

        await session.handle_message(hello())
        await eventually(lambda: outbox.of_type("snapshot"))

        snapshot = outbox.last_snapshot()
        assert snapshot["conversation_type"] == "patient-history"
        assert snapshot["language"] == "hi-IN"
        assert snapshot["messages"][0]["role"] == "assistant"
        assert snapshot["capture_supported"] is True

        await session.stop()

    @pytest.mark.asyncio
    async def test_typed_turn_spoken_through_browser(self, make_session, outbox, chat_client, eventually):
        chat_client.add_reply("Fever ", "is a symptom.")
        session = make_session()
        await session.handle_message(hello())

        await session.handle_message('{"type": "send_text", "text": "What is fever?"}')
        await eventually(lambda: outbox.of_type("speak"))

        speak = outbox.of_type("speak")[0]
        assert speak["text"] == "Fever is a symptom."
        assert speak["language"] == "en-IN"
        assert speak["engine"] == "primary"
        assert session.orchestrator.phase == ConversationPhase.SPEAKING

        await session.handle_message(json.dumps({"type": "speak_done", "id": speak["id"], "engine": "primary"}))
        await eventually(lambda: outbox.last_snapshot()["phase"] == "idle")

        assert outbox.last_snapshot()["messages"][-1] == {"role": "assistant", "content": "Fever is a symptom."}
        await session.stop()

    @pytest.mark.asyncio
    async def test_primary_voice_error_retries_on_fallback(self, make_session, outbox, chat_client, eventually):
        chat_client.add_reply("Rest.")
        session = make_session()
        await session.handle_message(hello())
        await session.handle_message('{"type": "send_text", "text": "tired"}')
        await eventually(lambda: outbox.of_type("speak"))

        primary = outbox.of_type("speak")[0]
        await session.handle_message(json.dumps({
            "type": "speak_error",
            "id": primary["id"],
            "engine": "primary",
            "error": "voice not available",
        }))
        await eventually(lambda: len(outbox.of_type("speak")) == 2)

        fallback = outbox.of_type("speak")[1]
        assert fallback["engine"] == "fallback"
        assert fallback["text"] == "Rest."

        await session.handle_message(json.dumps({"type": "speak_done", "id": fallback["id"], "engine": "fallback"}))
        await eventually(lambda: outbox.last_snapshot()["phase"] == "idle")
        assert outbox.last_snapshot()["last_error"] is None
        await session.stop()

    @pytest.mark.asyncio
    async def test_voice_turn_from_browser_transcripts(self, make_session, outbox, chat_client, eventually):
        chat_client.add_reply("Hello there.")
        session = make_session()
        await session.handle_message(hello(synthesis=False, fallback=False))

        await session.handle_message('{"type": "start_listening"}')
        assert outbox.of_type("capture_start") == [{"type": "capture_start", "language": "en-IN"}]

        await session.handle_message('{"type": "transcript", "text": "hel", "is_final": false}')
        await eventually(lambda: outbox.last_snapshot()["pending_transcript"] == "hel")

        await session.handle_message('{"type": "transcript", "text": "hello", "is_final": true}')
        await eventually(lambda: outbox.last_snapshot()["messages"][-1]["content"] == "Hello there.")

        assert outbox.of_type("capture_stop")
        assert outbox.of_type("speak") == []
        await session.stop()

    @pytest.mark.asyncio
    async def test_null_final_transcript_creates_no_turn(self, make_session, outbox, chat_client, eventually):
        session = make_session()
        await session.handle_message(hello(synthesis=False, fallback=False))
        await session.handle_message('{"type": "start_listening"}')

        await session.handle_message('{"type": "transcript", "text": null, "is_final": true}')
        await eventually(lambda: session.orchestrator.metrics.discarded_transcripts == 1)

        assert chat_client.calls == []
        assert session.orchestrator.phase == ConversationPhase.LISTENING
        assert len(session.orchestrator.messages) == 1
        await session.stop()

    @pytest.mark.asyncio
    async def test_invalid_language_reported(self, make_session, outbox):
        session = make_session()
        await session.handle_message(hello())

        await session.handle_message('{"type": "language", "language": "fr-FR"}')

        assert outbox.of_type("error")[-1]["message"] == "Unsupported language: fr-FR"
        await session.stop()

    @pytest.mark.asyncio
    async def test_unparseable_message_reported(self, make_session, outbox):
        session = make_session()

        await session.handle_message("{{{")

        assert outbox.of_type("error")[0]["message"].startswith("Invalid JSON")

    @pytest.mark.asyncio
    async def test_close_sends_final_snapshot(self, make_session, outbox, eventually):
        session = make_session()
        await session.handle_message(hello())

        await session.handle_message('{"type": "close"}')

        assert not session.is_running
        assert outbox.last_snapshot()["closed"] is True
        assert outbox.last_snapshot()["phase"] == "closed"

        # Messages after close are ignored.
        count = len(outbox.messages)
        await session.handle_message('{"type": "send_text", "text": "still there?"}')
        assert len(outbox.messages) == count

    @pytest.mark.asyncio
    async def test_stop_before_hello(self, make_session):
        session = make_session()
        await session.stop()
        assert not session.is_running

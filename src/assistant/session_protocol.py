"""
Conversation WebSocket protocol.

The browser owns the speech engines (Web Speech recognition and synthesis),
so the conversation socket carries both user controls and speech traffic.

Client messages (JSON, `type` field):
- hello: capability report, must come first
- start_listening / stop_listening: microphone button
- transcript: interim or final recognition result
- capture_ended: recognition stopped on its own
- send_text: typed input
- mute / toggle_mute / language / continuous: settings
- speak_done / speak_error: result of a `speak` request
- close: leave the conversation

Server messages:
- snapshot: the full conversation view after every change
- capture_start / capture_stop: drive the recognizer
- speak / speak_cancel: drive a synthesis engine
- error: protocol-level problem with the last client message
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import msgspec
import structlog

from src.assistant.models import ConversationSnapshot, TranscriptEvent

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class ClientEventType(str, Enum):
    """Client-to-server event types."""
    HELLO = "hello"
    START_LISTENING = "start_listening"
    STOP_LISTENING = "stop_listening"
    TRANSCRIPT = "transcript"
    CAPTURE_ENDED = "capture_ended"
    SEND_TEXT = "send_text"
    MUTE = "mute"
    TOGGLE_MUTE = "toggle_mute"
    LANGUAGE = "language"
    CONTINUOUS = "continuous"
    SPEAK_DONE = "speak_done"
    SPEAK_ERROR = "speak_error"
    CLOSE = "close"


def _text(message: Dict[str, Any], key: str = "text") -> str:
    value = message.get(key)
    return value if isinstance(value, str) else ""


def _flag(message: Dict[str, Any], key: str, default: bool = False) -> bool:
    """Only real JSON booleans count; anything else (including "false") is the default."""
    value = message.get(key)
    return value if isinstance(value, bool) else default


@dataclass
class HelloEvent:
    """Parsed capability report."""
    capture_supported: bool
    synthesis_supported: bool
    fallback_supported: bool

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "HelloEvent":
        return cls(
            capture_supported=_flag(message, "capture_supported"),
            synthesis_supported=_flag(message, "synthesis_supported"),
            fallback_supported=_flag(message, "fallback_supported"),
        )


@dataclass
class SpeakResultEvent:
    """Parsed speak_done / speak_error event."""
    utterance_id: str
    engine: str
    error: Optional[str] = None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "SpeakResultEvent":
        error = message.get("error")
        return cls(
            utterance_id=_text(message, "id"),
            engine=_text(message, "engine") or "primary",
            error=str(error) if error is not None else None,
        )


def _transcript_from_message(message: Dict[str, Any]) -> TranscriptEvent:
    confidence = message.get("confidence")
    try:
        confidence = float(confidence) if confidence is not None else None
    except (TypeError, ValueError):
        confidence = None
    return TranscriptEvent(
        text=_text(message),
        is_final=_flag(message, "is_final"),
        confidence=confidence,
    )


def parse_client_message(raw_message: str | bytes) -> tuple[ClientEventType, Any]:
    """
    Parse a raw client WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Message must be a JSON object")

    type_str = message.get("type", "")
    try:
        event_type = ClientEventType(type_str)
    except ValueError:
        raise ValueError(f"Unknown message type: {type_str}")

    if event_type == ClientEventType.HELLO:
        return event_type, HelloEvent.from_message(message)
    if event_type == ClientEventType.TRANSCRIPT:
        return event_type, _transcript_from_message(message)
    if event_type in (ClientEventType.SPEAK_DONE, ClientEventType.SPEAK_ERROR):
        event = SpeakResultEvent.from_message(message)
        if not event.utterance_id:
            raise ValueError(f"{type_str} requires an id")
        if event_type == ClientEventType.SPEAK_ERROR and event.error is None:
            event.error = "unknown error"
        return event_type, event
    if event_type == ClientEventType.SEND_TEXT:
        return event_type, _text(message)
    if event_type == ClientEventType.MUTE:
        return event_type, _flag(message, "muted", True)
    if event_type == ClientEventType.CONTINUOUS:
        return event_type, _flag(message, "enabled", True)
    if event_type == ClientEventType.LANGUAGE:
        language = message.get("language")
        if not isinstance(language, str) or not language:
            raise ValueError("language requires a locale tag")
        return event_type, language
    return event_type, message


def _encode(message: Dict[str, Any]) -> str:
    return encoder.encode(message).decode("utf-8")


def create_snapshot_message(snapshot: ConversationSnapshot) -> str:
    return _encode({"type": "snapshot", "snapshot": snapshot.to_dict()})


def create_capture_start_message(language: str) -> str:
    return _encode({"type": "capture_start", "language": language})


def create_capture_stop_message() -> str:
    return _encode({"type": "capture_stop"})


def create_speak_message(utterance_id: str, text: str, language: str, engine: str) -> str:
    return _encode(
        {
            "type": "speak",
            "id": utterance_id,
            "text": text,
            "language": language,
            "engine": engine,
        }
    )


def create_speak_cancel_message(utterance_id: str, engine: str) -> str:
    return _encode({"type": "speak_cancel", "id": utterance_id, "engine": engine})


def create_error_message(message: str) -> str:
    return _encode({"type": "error", "message": message})

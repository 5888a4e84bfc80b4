from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConversationType(str, Enum):
    """Server-side conversation behavior tag, passed through unchanged."""
    PATIENT_ASSISTANT = "patient-assistant"
    PATIENT_HISTORY = "patient-history"


class ConversationPhase(str, Enum):
    """Current phase of the conversation orchestrator."""
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"
    CLOSED = "closed"


@dataclass(frozen=True)
class Message:
    """A single message in the conversation history."""
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time, compare=False)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)

    def to_wire(self) -> dict[str, str]:
        """Message in the chat exchange format."""
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class TranscriptEvent:
    """
    A transcript from the capture capability.

    Interim events are best guesses that may still be revised; a final event
    marks the locale-dependent end of an utterance.
    """
    text: str
    is_final: bool
    confidence: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ConversationSnapshot:
    """Read-only, versioned view of one conversation."""
    version: int
    phase: ConversationPhase
    language: str
    muted: bool
    continuous_voice: bool
    conversation_type: ConversationType
    pending_transcript: str
    messages: tuple[Message, ...]
    draft: str
    capture_supported: bool
    synthesis_supported: bool
    last_error: Optional[str]
    progress: float

    @property
    def closed(self) -> bool:
        return self.phase == ConversationPhase.CLOSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "phase": self.phase.value,
            "language": self.language,
            "muted": self.muted,
            "continuous_voice": self.continuous_voice,
            "conversation_type": self.conversation_type.value,
            "pending_transcript": self.pending_transcript,
            "messages": [m.to_wire() for m in self.messages],
            "draft": self.draft,
            "capture_supported": self.capture_supported,
            "synthesis_supported": self.synthesis_supported,
            "last_error": self.last_error,
            "progress": round(self.progress, 1),
            "closed": self.closed,
        }

"""
Error taxonomy for the conversation core.

Only `ChatTransportError` ever becomes visible to the user (as an assistant
message). Everything else is recovered locally by the component that sees it.
"""

from __future__ import annotations

from typing import Optional


class AssistantError(Exception):
    """Base class for conversation core errors."""


class UnsupportedError(AssistantError):
    """The platform lacks a speech capability (capture or synthesis)."""

    def __init__(self, capability: str):
        super().__init__(f"{capability} is not supported on this platform")
        self.capability = capability


class ChatTransportError(AssistantError):
    """The chat exchange failed before or during streaming."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SynthesisFailure(AssistantError):
    """A synthesis engine failed to speak an utterance."""

    def __init__(self, message: str, *, engine: str = "primary"):
        super().__init__(message)
        self.engine = engine


class MalformedFrameError(AssistantError):
    """A single streamed frame could not be parsed."""

    def __init__(self, payload: str, reason: str = ""):
        super().__init__(f"Malformed frame: {reason}" if reason else "Malformed frame")
        self.payload = payload

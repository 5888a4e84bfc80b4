"""
Transcript accumulator for streamed assistant replies.

Pure data assembly: deltas are appended in arrival order, and the completed
text is handed off by value exactly once per turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Optional


@dataclass
class StreamMetrics:
    """Timing for one streamed reply."""
    started_at: float = 0.0
    first_delta_at: Optional[float] = None
    completed_at: Optional[float] = None
    delta_count: int = 0

    @property
    def first_delta_ms(self) -> float:
        if self.first_delta_at is None:
            return 0.0
        return (self.first_delta_at - self.started_at) * 1000

    @property
    def total_ms(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at) * 1000


class TranscriptAccumulator:
    """Owns the StreamBuffer for the turn currently streaming."""

    def __init__(self):
        self._parts: list[str] = []
        self._text = ""
        self._active = False
        self._complete = False
        self.metrics = StreamMetrics()

    @property
    def text(self) -> str:
        """The buffer content as of the most recent delta."""
        return self._text

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_complete(self) -> bool:
        return self._complete

    def reset(self) -> None:
        """Start a new turn with an empty buffer."""
        self._parts.clear()
        self._text = ""
        self._active = True
        self._complete = False
        self.metrics = StreamMetrics(started_at=time.time())

    def append(self, delta: str) -> str:
        """
        Append a delta fragment and return the updated buffer.

        Raises:
            RuntimeError: If no turn is streaming
        """
        if not self._active:
            raise RuntimeError("No turn is streaming")
        if not delta:
            return self._text

        if self.metrics.first_delta_at is None:
            self.metrics.first_delta_at = time.time()
        self.metrics.delta_count += 1

        self._parts.append(delta)
        self._text += delta
        return self._text

    def finish(self) -> str:
        """
        Mark the turn complete and hand off the final text.

        The buffer is emptied, so the same text can never be handed off twice.
        """
        if not self._active:
            raise RuntimeError("No turn is streaming")
        final = "".join(self._parts)
        self.metrics.completed_at = time.time()
        self._parts.clear()
        self._text = ""
        self._active = False
        self._complete = True
        return final

    def discard(self) -> None:
        """Drop a partial buffer (abandoned or failed turn)."""
        self._parts.clear()
        self._text = ""
        self._active = False
        self._complete = False

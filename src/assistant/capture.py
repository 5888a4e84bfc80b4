"""
Capture controller for continuous speech-to-text.

Wraps a platform recognizer (browser Web Speech, a native OS engine, a remote
STT service) behind a start/stop contract and forwards its transcript events
to a single callback owned by the conversation orchestrator.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog

from src.assistant.errors import UnsupportedError
from src.assistant.models import TranscriptEvent

logger = structlog.get_logger(__name__)


class SpeechRecognizer(ABC):
    """Platform speech-to-text capability addressable by locale tag."""

    @property
    @abstractmethod
    def supported(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def start(self, language: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def events(self) -> AsyncIterator[TranscriptEvent]:
        """Transcript events for the current listening session."""
        raise NotImplementedError


@dataclass
class CaptureMetrics:
    """Metrics for capture sessions."""
    sessions: int = 0
    interim_transcripts: int = 0
    final_transcripts: int = 0
    empty_finals: int = 0

    def record_transcript(self, event: TranscriptEvent) -> None:
        if not event.is_final:
            self.interim_transcripts += 1
        elif event.text.strip():
            self.final_transcripts += 1
        else:
            self.empty_finals += 1


class CaptureController:
    """Single exclusive capture resource for one conversation."""

    def __init__(self, recognizer: SpeechRecognizer):
        self._recognizer = recognizer
        self._listening = False
        self._language: Optional[str] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._transcript_callback: Optional[Callable[[TranscriptEvent], Awaitable[None]]] = None
        self._ended_callback: Optional[Callable[[], Awaitable[None]]] = None
        self._metrics = CaptureMetrics()

    def set_transcript_callback(
        self,
        callback: Callable[[TranscriptEvent], Awaitable[None]],
    ) -> None:
        self._transcript_callback = callback

    def set_ended_callback(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Called when the recognizer stops on its own while listening."""
        self._ended_callback = callback

    @property
    def supported(self) -> bool:
        return self._recognizer.supported

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def metrics(self) -> CaptureMetrics:
        return self._metrics

    async def start(self, language: str) -> None:
        """
        Begin continuous listening in `language`. No-op if already listening.

        Raises:
            UnsupportedError: If the platform has no capture capability
        """
        if not self._recognizer.supported:
            raise UnsupportedError("speech capture")
        if self._listening:
            return

        await self._recognizer.start(language)
        self._listening = True
        self._language = language
        self._metrics.sessions += 1
        self._pump_task = asyncio.create_task(self._pump())
        logger.debug("Capture started", language=language)

    async def stop(self) -> None:
        """End listening. No-op if not listening."""
        if not self._listening:
            return

        self._listening = False
        task, self._pump_task = self._pump_task, None
        try:
            await self._recognizer.stop()
        finally:
            # The pump may be the caller (stop from inside a transcript callback).
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        logger.debug("Capture stopped", language=self._language)

    async def _pump(self) -> None:
        ended_unexpectedly = False
        try:
            async for event in self._recognizer.events():
                if not self._listening:
                    break
                self._metrics.record_transcript(event)
                if self._transcript_callback:
                    await self._transcript_callback(event)
            ended_unexpectedly = self._listening
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Capture stream failed", error_type=type(e).__name__, error=str(e))
            ended_unexpectedly = self._listening

        if ended_unexpectedly and self._pump_task is asyncio.current_task():
            self._listening = False
            self._pump_task = None
            logger.info("Capture ended by recognizer", language=self._language)
            if self._ended_callback:
                await self._ended_callback()

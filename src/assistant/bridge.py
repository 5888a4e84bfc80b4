"""
Browser speech bridge.

Speech recognition and synthesis run in the user's browser; these adapters
expose them to the capture and synthesis controllers through the
conversation socket.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

import structlog

from src.assistant.capture import SpeechRecognizer
from src.assistant.errors import SynthesisFailure
from src.assistant.models import TranscriptEvent
from src.assistant.session_protocol import (
    create_capture_start_message,
    create_capture_stop_message,
    create_speak_cancel_message,
    create_speak_message,
)
from src.assistant.synthesis import SpeechSynthesizer

logger = structlog.get_logger(__name__)

SendMessage = Callable[[str], Awaitable[None]]


class BridgeRecognizer(SpeechRecognizer):
    """Recognizer whose transcripts arrive from the browser."""

    def __init__(self, send_message: SendMessage, *, supported: bool = False):
        self._send_message = send_message
        self._supported = supported
        self._queue: Optional[asyncio.Queue[Optional[TranscriptEvent]]] = None

    @property
    def supported(self) -> bool:
        return self._supported

    def set_supported(self, supported: bool) -> None:
        self._supported = supported

    @property
    def is_active(self) -> bool:
        return self._queue is not None

    async def start(self, language: str) -> None:
        self._queue = asyncio.Queue()
        await self._send_message(create_capture_start_message(language))

    async def stop(self) -> None:
        queue, self._queue = self._queue, None
        if queue is not None:
            queue.put_nowait(None)
        await self._send_message(create_capture_stop_message())

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        queue = self._queue
        if queue is None:
            return
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    def feed(self, event: TranscriptEvent) -> bool:
        """Deliver a transcript from the browser. Dropped if capture is not active."""
        if self._queue is None:
            logger.debug("Transcript dropped, capture not active", is_final=event.is_final)
            return False
        self._queue.put_nowait(event)
        return True

    def end(self) -> None:
        """The browser stopped recognition on its own."""
        queue, self._queue = self._queue, None
        if queue is not None:
            queue.put_nowait(None)


class BridgeSynthesizer(SpeechSynthesizer):
    """One browser synthesis engine (primary voice or fallback)."""

    def __init__(
        self,
        send_message: SendMessage,
        *,
        engine: str = "primary",
        supported: bool = False,
        timeout_seconds: Optional[float] = None,
    ):
        self.name = engine
        self._send_message = send_message
        self._supported = supported
        self._timeout_seconds = timeout_seconds
        self._pending: Dict[str, asyncio.Future] = {}
        self._current_id: Optional[str] = None

    @property
    def supported(self) -> bool:
        return self._supported

    def set_supported(self, supported: bool) -> None:
        self._supported = supported

    async def speak(self, text: str, language: str) -> None:
        utterance_id = uuid.uuid4().hex[:12]
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[utterance_id] = future
        self._current_id = utterance_id

        try:
            await self._send_message(create_speak_message(utterance_id, text, language, self.name))
            if self._timeout_seconds:
                try:
                    await asyncio.wait_for(future, timeout=self._timeout_seconds)
                except asyncio.TimeoutError:
                    raise SynthesisFailure("Timed out waiting for playback", engine=self.name)
            else:
                await future
        finally:
            self._pending.pop(utterance_id, None)
            if self._current_id == utterance_id:
                self._current_id = None

    def resolve(self, utterance_id: str, error: Optional[str] = None) -> bool:
        """Complete a pending utterance from a speak_done / speak_error message."""
        future = self._pending.get(utterance_id)
        if future is None or future.done():
            logger.debug("Unknown utterance result", engine=self.name, utterance_id=utterance_id)
            return False
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(SynthesisFailure(error, engine=self.name))
        return True

    async def cancel(self) -> None:
        utterance_id = self._current_id
        if utterance_id is None:
            return
        await self._send_message(create_speak_cancel_message(utterance_id, self.name))

"""
Conversation session for one WebSocket connection.

Wires the browser speech bridge, the controllers and the orchestrator
together, dispatches client messages, and pushes a snapshot to the client
after every change.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from src.assistant.bridge import BridgeRecognizer, BridgeSynthesizer
from src.assistant.capture import CaptureController
from src.assistant.chat_client import StreamingChatClient
from src.assistant.config import Config, get_config
from src.assistant.models import ConversationType
from src.assistant.orchestrator import ConversationOrchestrator
from src.assistant.session_protocol import (
    ClientEventType,
    HelloEvent,
    SpeakResultEvent,
    create_error_message,
    create_snapshot_message,
    parse_client_message,
)
from src.assistant.synthesis import SynthesisController

logger = structlog.get_logger(__name__)


class ConversationSession:
    """
    One open conversation view.

    The orchestrator is created on the client's `hello`, once the browser has
    reported which speech capabilities it has.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        conversation_type: ConversationType | str = ConversationType.PATIENT_ASSISTANT,
        language: Optional[str] = None,
        continuous_voice: Optional[bool] = None,
        config: Optional[Config] = None,
        chat_client: Optional[StreamingChatClient] = None,
    ):
        self.config = config or get_config()
        self._send_message = send_message
        self._conversation_type = ConversationType(conversation_type)
        self._language = language
        self._continuous_voice = continuous_voice

        self._recognizer = BridgeRecognizer(send_message)
        self._primary = BridgeSynthesizer(
            send_message,
            engine="primary",
            timeout_seconds=self.config.speak_timeout_seconds,
        )
        self._fallback = BridgeSynthesizer(
            send_message,
            engine="fallback",
            timeout_seconds=self.config.speak_timeout_seconds,
        )
        self._chat_client = chat_client or StreamingChatClient(self.config)

        self._orchestrator: Optional[ConversationOrchestrator] = None
        self._snapshot_task: Optional[asyncio.Task] = None
        self._is_running = True

    @property
    def orchestrator(self) -> Optional[ConversationOrchestrator]:
        return self._orchestrator

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def handle_message(self, raw_message: str) -> None:
        """Handle an incoming WebSocket message from the client."""
        if not self._is_running:
            return

        try:
            event_type, event = parse_client_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse client message", error=str(e))
            await self._send_message(create_error_message(str(e)))
            return

        if event_type == ClientEventType.HELLO:
            await self._handle_hello(event)
            return

        orchestrator = self._orchestrator
        if orchestrator is None:
            await self._send_message(create_error_message("hello required"))
            return

        if event_type == ClientEventType.START_LISTENING:
            await orchestrator.start_listening()

        elif event_type == ClientEventType.STOP_LISTENING:
            await orchestrator.stop_listening()

        elif event_type == ClientEventType.TRANSCRIPT:
            self._recognizer.feed(event)

        elif event_type == ClientEventType.CAPTURE_ENDED:
            self._recognizer.end()

        elif event_type == ClientEventType.SEND_TEXT:
            await orchestrator.submit_text(event)

        elif event_type == ClientEventType.MUTE:
            await orchestrator.set_muted(event)

        elif event_type == ClientEventType.TOGGLE_MUTE:
            await orchestrator.toggle_mute()

        elif event_type == ClientEventType.LANGUAGE:
            try:
                await orchestrator.set_language(event)
            except ValueError as e:
                await self._send_message(create_error_message(str(e)))

        elif event_type == ClientEventType.CONTINUOUS:
            orchestrator.set_continuous_voice(event)

        elif event_type in (ClientEventType.SPEAK_DONE, ClientEventType.SPEAK_ERROR):
            self._resolve_speech(event)

        elif event_type == ClientEventType.CLOSE:
            await self.stop()

    async def _handle_hello(self, event: HelloEvent) -> None:
        if self._orchestrator is not None:
            logger.debug("Duplicate hello ignored")
            return

        self._recognizer.set_supported(event.capture_supported)
        self._primary.set_supported(event.synthesis_supported)
        self._fallback.set_supported(event.fallback_supported)

        self._orchestrator = ConversationOrchestrator(
            CaptureController(self._recognizer),
            SynthesisController(self._primary, self._fallback),
            self._chat_client,
            conversation_type=self._conversation_type,
            language=self._language,
            continuous_voice=self._continuous_voice,
            config=self.config,
        )
        self._snapshot_task = asyncio.create_task(self._push_snapshots(self._orchestrator))
        await self._orchestrator.open()

    def _resolve_speech(self, event: SpeakResultEvent) -> None:
        engines = [self._primary, self._fallback]
        engines.sort(key=lambda engine: engine.name != event.engine)
        for engine in engines:
            if engine.resolve(event.utterance_id, event.error):
                return

    async def _push_snapshots(self, orchestrator: ConversationOrchestrator) -> None:
        version = -1
        try:
            while True:
                snapshot = await orchestrator.wait_for_version(version)
                version = snapshot.version
                await self._send_message(create_snapshot_message(snapshot))
                if snapshot.closed:
                    return
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Snapshot push failed", error=str(e))

    async def stop(self) -> None:
        """Tear down the conversation. Safe to call more than once."""
        self._is_running = False
        if self._orchestrator is not None:
            await self._orchestrator.close()

        task, self._snapshot_task = self._snapshot_task, None
        if task and not task.done():
            # Give the final (closed) snapshot a chance to go out.
            try:
                await asyncio.wait_for(task, timeout=1.0)
            except asyncio.TimeoutError:
                pass

"""
Conversation orchestrator.

Owns the turn-taking state machine for one open conversation:

    Idle -> Listening -> Thinking -> Speaking -> Idle (-> Listening)

Capture, the chat exchange and synthesis are all asynchronous; every await in
this module is a point where mute, language changes or teardown can interleave,
so each resumes by re-checking `_closed`, `_muted` and the current phase.

Invariants:
- At most one chat exchange per conversation (turn submission is synchronous
  and rejected outside Idle/Listening)
- Capture is stopped before synthesis starts and re-armed only after the
  rearm settle delay
- Only completed stream buffers are appended to history
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.assistant.accumulator import TranscriptAccumulator
from src.assistant.capture import CaptureController
from src.assistant.chat_client import StreamingChatClient
from src.assistant.config import Config, get_config
from src.assistant.errors import ChatTransportError, UnsupportedError
from src.assistant.greetings import error_reply_for, greeting_for
from src.assistant.language import normalize_language_tag, resolve_language
from src.assistant.models import (
    ConversationPhase,
    ConversationSnapshot,
    ConversationType,
    Message,
    TranscriptEvent,
)
from src.assistant.synthesis import SynthesisController, SynthesisOutcome

logger = structlog.get_logger(__name__)

SnapshotListener = Callable[[ConversationSnapshot], None]


def _preview(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int
    source: str
    start_time: float
    first_delta_ms: float = 0.0
    stream_ms: float = 0.0
    speak_ms: float = 0.0
    deltas: int = 0
    outcome: str = ""


@dataclass
class ConversationMetrics:
    """Metrics for the whole conversation."""
    start_time: float = field(default_factory=time.time)
    turns: List[TurnMetrics] = field(default_factory=list)
    rejected_submissions: int = 0
    transport_errors: int = 0
    synthesis_failures: int = 0
    discarded_transcripts: int = 0
    abandoned_captures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration_seconds": round(time.time() - self.start_time, 2),
            "total_turns": len(self.turns),
            "rejected_submissions": self.rejected_submissions,
            "transport_errors": self.transport_errors,
            "synthesis_failures": self.synthesis_failures,
            "discarded_transcripts": self.discarded_transcripts,
            "abandoned_captures": self.abandoned_captures,
        }


class ConversationOrchestrator:
    """
    Single owner of capture, synthesis and the chat exchange for one conversation.

    Interface layers read `snapshot()` or `subscribe()` to changes; they never
    touch the controllers directly.
    """

    def __init__(
        self,
        capture: CaptureController,
        synthesis: SynthesisController,
        chat_client: StreamingChatClient,
        *,
        conversation_type: ConversationType | str = ConversationType.PATIENT_ASSISTANT,
        language: Optional[str] = None,
        continuous_voice: Optional[bool] = None,
        muted: bool = False,
        greeting: Optional[str] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self._capture = capture
        self._synthesis = synthesis
        self._chat = chat_client

        self._conversation_type = ConversationType(conversation_type)
        self._language = resolve_language(language, self.config.default_language)
        self._continuous_voice = (
            self.config.continuous_voice if continuous_voice is None else continuous_voice
        )
        self._muted = muted
        self._greeting = greeting

        # State
        self._phase = ConversationPhase.IDLE
        self._closed = False
        self._opened = False
        self._pending_transcript = ""
        self._messages: List[Message] = []
        self._buffer = TranscriptAccumulator()
        self._capture_supported = capture.supported
        self._synthesis_supported = synthesis.supported
        self._last_error: Optional[str] = None
        self._current_turn = 0
        self._metrics = ConversationMetrics()

        # Snapshot versioning
        self._version = 0
        self._listeners: List[SnapshotListener] = []
        self._changed = asyncio.Event()

        # Background tasks
        self._turn_task: Optional[asyncio.Task] = None
        self._rearm_task: Optional[asyncio.Task] = None
        self._greeting_task: Optional[asyncio.Task] = None

        capture.set_transcript_callback(self._on_transcript)
        capture.set_ended_callback(self._on_capture_ended)

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def phase(self) -> ConversationPhase:
        return self._phase

    @property
    def language(self) -> str:
        return self._language

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def metrics(self) -> ConversationMetrics:
        return self._metrics

    def metrics_report(self) -> Dict[str, Any]:
        """Conversation counters together with the capture and synthesis counters."""
        report = self._metrics.to_dict()
        report["capture"] = asdict(self._capture.metrics)
        report["synthesis"] = asdict(self._synthesis.metrics)
        return report

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(
            version=self._version,
            phase=self._phase,
            language=self._language,
            muted=self._muted,
            continuous_voice=self._continuous_voice,
            conversation_type=self._conversation_type,
            pending_transcript=self._pending_transcript,
            messages=tuple(self._messages),
            draft=self._buffer.text if self._phase == ConversationPhase.THINKING else "",
            capture_supported=self._capture_supported,
            synthesis_supported=self._synthesis_supported,
            last_error=self._last_error,
            progress=self._progress(),
        )

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener called with every new snapshot. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait_for_version(self, version: int) -> ConversationSnapshot:
        """Wait until the snapshot version is newer than `version`."""
        while self._version <= version:
            await self._changed.wait()
        return self.snapshot()

    def _progress(self) -> float:
        if self._conversation_type != ConversationType.PATIENT_HISTORY:
            return 0.0
        return min(100.0, len(self._messages) / self.config.history_target_messages * 100)

    def _notify(self) -> None:
        self._version += 1
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning("Snapshot listener failed", error=str(e))
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def _transition(self, phase: ConversationPhase) -> None:
        if phase != self._phase:
            logger.debug("Phase transition", from_phase=self._phase.value, to_phase=phase.value)
        self._phase = phase

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Seed the greeting and, if enabled, speak it after the greeting delay."""
        if self._opened or self._closed:
            return
        self._opened = True

        greeting = self._greeting or greeting_for(self._conversation_type, self._language)
        self._messages.append(Message.assistant(greeting))
        self._notify()

        logger.info(
            "Conversation opened",
            conversation_type=self._conversation_type.value,
            language=self._language,
            continuous_voice=self._continuous_voice,
            capture_supported=self._capture_supported,
            synthesis_supported=self._synthesis_supported,
        )

        if self.config.speak_greeting and not self._muted and self._synthesis_supported:
            self._greeting_task = asyncio.create_task(self._speak_greeting(greeting))

    async def close(self) -> None:
        """
        Tear down the conversation from any phase.

        Capture is stopped and synthesis cancelled every time this is called;
        in-flight exchanges are abandoned and their remaining deltas discarded.
        """
        first_close = not self._closed
        self._closed = True

        tasks = [
            task
            for task in (self._turn_task, self._rearm_task, self._greeting_task)
            if task and not task.done() and task is not asyncio.current_task()
        ]
        for task in tasks:
            task.cancel()

        try:
            await self._capture.stop()
        except Exception as e:
            logger.warning("Capture stop failed during teardown", error=str(e))
        finally:
            await self._synthesis.cancel()

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if first_close:
            self._buffer.discard()
            self._pending_transcript = ""
            self._transition(ConversationPhase.CLOSED)
            self._notify()
            logger.info("Conversation closed", metrics=self.metrics_report())

    async def __aenter__(self) -> "ConversationOrchestrator":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # User controls
    # ------------------------------------------------------------------

    async def start_listening(self) -> bool:
        """Idle -> Listening. Returns False if rejected or unsupported."""
        if self._closed or self._phase != ConversationPhase.IDLE:
            logger.debug("Capture start rejected", phase=self._phase.value)
            return False

        self._cancel_rearm()
        self._transition(ConversationPhase.LISTENING)
        self._notify()

        try:
            await self._capture.start(self._language)
        except UnsupportedError as e:
            logger.info("Capture unsupported, falling back to typed input", capability=e.capability)
            self._capture_supported = False
            self._last_error = "unsupported"
            self._abandon_listening()
            return False
        except Exception as e:
            logger.error("Capture failed to start", error_type=type(e).__name__, error=str(e))
            self._abandon_listening()
            return False

        if self._closed or self._phase != ConversationPhase.LISTENING:
            # Listening ended while the recognizer was still starting.
            logger.debug("Capture start superseded", phase=self._phase.value)
            await self._capture.stop()
            return False
        return True

    async def stop_listening(self) -> bool:
        """Listening -> Idle. Any interim transcript is discarded."""
        if self._phase != ConversationPhase.LISTENING:
            return False
        self._abandon_listening(reason="stopped")
        await self._capture.stop()
        return True

    async def toggle_listening(self) -> bool:
        if self._phase == ConversationPhase.LISTENING:
            await self.stop_listening()
            return False
        return await self.start_listening()

    async def submit_text(self, text: str) -> bool:
        """Submit typed input as a turn. Returns False if rejected."""
        text = (text or "").strip()
        if not text:
            return False
        return self._begin_turn(text, source="typed")

    async def set_muted(self, muted: bool) -> None:
        """Mute skips synthesis for future turns and cuts off the current utterance."""
        if muted == self._muted:
            return
        self._muted = muted
        self._notify()
        logger.info("Mute changed", muted=muted, phase=self._phase.value)

        if muted:
            self._cancel_rearm()
            if self._phase == ConversationPhase.SPEAKING:
                await self._synthesis.cancel()

    async def toggle_mute(self) -> bool:
        await self.set_muted(not self._muted)
        return self._muted

    async def set_language(self, language: str) -> bool:
        """
        Switch the capture/synthesis locale. Only allowed while Idle.

        Raises:
            ValueError: If the language is not supported
        """
        tag = normalize_language_tag(language)
        if tag is None:
            raise ValueError(f"Unsupported language: {language}")
        if self._closed or self._phase != ConversationPhase.IDLE:
            logger.debug("Language change rejected", phase=self._phase.value, language=tag)
            return False
        if tag != self._language:
            self._language = tag
            self._notify()
            logger.info("Language changed", language=tag)
        return True

    def set_continuous_voice(self, enabled: bool) -> None:
        if enabled == self._continuous_voice:
            return
        self._continuous_voice = enabled
        if not enabled:
            self._cancel_rearm()
        self._notify()

    # ------------------------------------------------------------------
    # Capture events
    # ------------------------------------------------------------------

    async def _on_transcript(self, event: TranscriptEvent) -> None:
        if self._closed or self._phase != ConversationPhase.LISTENING:
            if event.is_final and event.text.strip():
                self._metrics.rejected_submissions += 1
                logger.info(
                    "Transcript rejected",
                    phase=self._phase.value,
                    text=_preview(event.text),
                )
            return

        if not event.is_final:
            if event.text != self._pending_transcript:
                self._pending_transcript = event.text
                self._notify()
            return

        self._pending_transcript = ""
        text = event.text.strip()
        if not text:
            self._metrics.discarded_transcripts += 1
            self._notify()
            return

        self._begin_turn(text, source="voice")

    async def _on_capture_ended(self) -> None:
        if self._phase == ConversationPhase.LISTENING:
            self._abandon_listening(reason="recognizer_ended")

    def _abandon_listening(self, reason: Optional[str] = None) -> None:
        # Capture ended without a final transcript; nothing is submitted.
        if reason and self._phase == ConversationPhase.LISTENING:
            self._metrics.abandoned_captures += 1
            logger.info("Capture abandoned", reason=reason, had_interim=bool(self._pending_transcript))
        self._pending_transcript = ""
        if self._phase == ConversationPhase.LISTENING:
            self._transition(ConversationPhase.IDLE)
        self._notify()

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    def _begin_turn(self, text: str, *, source: str) -> bool:
        # Synchronous: no other trigger can interleave between the check and Thinking.
        if self._closed or self._phase not in (ConversationPhase.IDLE, ConversationPhase.LISTENING):
            self._metrics.rejected_submissions += 1
            logger.info(
                "Turn rejected",
                source=source,
                phase=self._phase.value,
                text=_preview(text),
            )
            return False

        self._cancel_rearm()
        self._current_turn += 1
        turn = TurnMetrics(turn_id=self._current_turn, source=source, start_time=time.time())

        self._transition(ConversationPhase.THINKING)
        self._pending_transcript = ""
        self._last_error = None
        self._messages.append(Message.user(text))
        self._buffer.reset()
        self._notify()

        logger.info("Turn started", turn_id=turn.turn_id, source=source, text=_preview(text))
        self._turn_task = asyncio.create_task(self._run_turn(turn))
        return True

    async def _run_turn(self, turn: TurnMetrics) -> None:
        try:
            await self._capture.stop()
            reply = await self._stream_reply(turn)
            if reply is None or self._closed:
                return

            if reply and not self._muted and self._synthesis_supported:
                speak_start = time.time()
                outcome = await self._speak(reply, settle=True)
                turn.speak_ms = (time.time() - speak_start) * 1000
                turn.outcome = outcome.value
            else:
                turn.outcome = "muted" if self._muted else "silent"
                self._transition(ConversationPhase.IDLE)
                self._notify()
                if not self._muted:
                    self._schedule_rearm()
        except asyncio.CancelledError:
            turn.outcome = "abandoned"
            self._buffer.discard()
            raise
        except Exception as e:
            turn.outcome = "failed"
            logger.error("Turn failed", turn_id=turn.turn_id, error_type=type(e).__name__, error=str(e))
            self._buffer.discard()
            if not self._closed:
                self._transition(ConversationPhase.IDLE)
                self._notify()
        finally:
            self._end_turn(turn)

    async def _stream_reply(self, turn: TurnMetrics) -> Optional[str]:
        """
        Stream the assistant reply for the current turn.

        Returns the committed reply text, or None if the turn ended without one
        (transport error or teardown).
        """
        history = list(self._messages)
        try:
            async with aclosing(self._chat.send(history, self._conversation_type)) as deltas:
                async for delta in deltas:
                    if self._closed:
                        self._buffer.discard()
                        return None
                    self._buffer.append(delta)
                    self._notify()
        except ChatTransportError as e:
            self._buffer.discard()
            self._metrics.transport_errors += 1
            turn.outcome = "transport_error"
            logger.warning(
                "Chat exchange failed",
                turn_id=turn.turn_id,
                status_code=e.status_code,
                error=str(e),
            )
            if self._closed:
                return None
            self._messages.append(Message.assistant(error_reply_for(self._language)))
            self._last_error = "chat_transport"
            self._transition(ConversationPhase.IDLE)
            self._notify()
            return None

        if self._closed:
            self._buffer.discard()
            return None

        stream_metrics = self._buffer.metrics
        reply = self._buffer.finish()
        turn.first_delta_ms = stream_metrics.first_delta_ms
        turn.stream_ms = stream_metrics.total_ms
        turn.deltas = stream_metrics.delta_count

        if reply:
            self._messages.append(Message.assistant(reply))
        self._notify()
        return reply

    async def _speak(self, text: str, *, settle: bool) -> SynthesisOutcome:
        """Speaking phase: synthesize `text`, then return to Idle and maybe re-arm."""
        self._transition(ConversationPhase.SPEAKING)
        self._notify()

        delays = self.config.settle_delays(self._language)
        if settle and delays.speak_s > 0:
            await asyncio.sleep(delays.speak_s)

        if self._closed or self._muted:
            outcome = SynthesisOutcome.CANCELLED
        else:
            outcome = await self._synthesis.speak(text, self._language)

        if outcome == SynthesisOutcome.FAILED:
            # Reply stays on screen; the conversation carries on as if it was spoken.
            self._metrics.synthesis_failures += 1
            logger.warning("Reply not spoken", language=self._language, text=_preview(text))

        if self._closed:
            return outcome

        self._transition(ConversationPhase.IDLE)
        self._notify()
        if not self._muted:
            self._schedule_rearm()
        return outcome

    async def _speak_greeting(self, greeting: str) -> None:
        await asyncio.sleep(self.config.greeting_delay_seconds)
        if self._closed or self._muted or self._phase != ConversationPhase.IDLE:
            return
        await self._speak(greeting, settle=False)

    def _schedule_rearm(self) -> None:
        if self._closed or self._muted or not self._continuous_voice or not self._capture_supported:
            return
        self._cancel_rearm()
        self._rearm_task = asyncio.create_task(self._rearm_after_settle())

    def _cancel_rearm(self) -> None:
        task, self._rearm_task = self._rearm_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _rearm_after_settle(self) -> None:
        delays = self.config.settle_delays(self._language)
        await asyncio.sleep(delays.rearm_s)
        if (
            self._closed
            or self._muted
            or not self._continuous_voice
            or self._phase != ConversationPhase.IDLE
        ):
            return
        logger.debug("Re-arming capture", language=self._language)
        await self.start_listening()

    def _end_turn(self, turn: TurnMetrics) -> None:
        self._metrics.turns.append(turn)
        logger.info(
            "Turn completed",
            turn_id=turn.turn_id,
            source=turn.source,
            outcome=turn.outcome,
            deltas=turn.deltas,
            first_delta_ms=round(turn.first_delta_ms, 2),
            stream_ms=round(turn.stream_ms, 2),
            speak_ms=round(turn.speak_ms, 2),
            total_turn_ms=round((time.time() - turn.start_time) * 1000, 2),
        )

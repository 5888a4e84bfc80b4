"""
Synthesis controller for text-to-speech.

- `primary`: the platform's preferred voice for the locale
- `fallback`: a second engine tried once when the primary fails

Calls are never queued. A new `speak` cancels the utterance in progress, and
`cancel` resolves the pending `speak` as cancelled rather than failed.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from src.assistant.errors import UnsupportedError

logger = structlog.get_logger(__name__)


class SynthesisOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SpeechSynthesizer(ABC):
    """Platform text-to-speech capability addressable by locale tag."""

    name: str = "primary"

    @property
    @abstractmethod
    def supported(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def speak(self, text: str, language: str) -> None:
        """
        Speak `text` and return once playback has finished.

        Raises:
            SynthesisFailure: If the engine could not speak the utterance
        """
        raise NotImplementedError

    async def cancel(self) -> None:
        return None


@dataclass
class SynthesisMetrics:
    """Metrics for synthesis requests."""
    requests: int = 0
    completed: int = 0
    cancelled: int = 0
    failed: int = 0
    primary_failures: int = 0
    fallback_successes: int = 0

    def record(self, outcome: SynthesisOutcome) -> None:
        if outcome == SynthesisOutcome.COMPLETED:
            self.completed += 1
        elif outcome == SynthesisOutcome.CANCELLED:
            self.cancelled += 1
        else:
            self.failed += 1


class SynthesisController:
    """Single exclusive synthesis resource for one conversation."""

    def __init__(
        self,
        primary: SpeechSynthesizer,
        fallback: Optional[SpeechSynthesizer] = None,
    ):
        self._primary = primary
        self._fallback = fallback
        self._inflight: Optional[asyncio.Task] = None
        self._active_engine: Optional[SpeechSynthesizer] = None
        self._metrics = SynthesisMetrics()

    @property
    def supported(self) -> bool:
        return self._primary.supported or bool(self._fallback and self._fallback.supported)

    @property
    def is_speaking(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def metrics(self) -> SynthesisMetrics:
        return self._metrics

    async def speak(self, text: str, language: str) -> SynthesisOutcome:
        """
        Speak `text` in `language`, retrying once on the fallback engine.

        Raises:
            UnsupportedError: If neither engine is available
        """
        if not self.supported:
            raise UnsupportedError("speech synthesis")

        if self.is_speaking:
            await self.cancel()

        self._metrics.requests += 1
        task = asyncio.create_task(self._speak_with_fallback(text, language))
        self._inflight = task

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            # The caller went away: stop the utterance too.
            if self._inflight is task:
                await self.cancel()
            raise
        finally:
            if self._inflight is task and task.done():
                self._inflight = None

        outcome = SynthesisOutcome.CANCELLED if task.cancelled() else task.result()
        self._metrics.record(outcome)
        return outcome

    async def cancel(self) -> None:
        """Halt any utterance in progress. Safe to call when idle."""
        task, self._inflight = self._inflight, None
        engine, self._active_engine = self._active_engine, None

        if task and not task.done():
            task.cancel()
        if engine is not None:
            try:
                await engine.cancel()
            except Exception as e:
                logger.warning("Synthesis engine cancel failed", engine=engine.name, error=str(e))
        if task:
            await asyncio.gather(task, return_exceptions=True)

    async def _speak_with_fallback(self, text: str, language: str) -> SynthesisOutcome:
        engines = [
            engine
            for engine in (self._primary, self._fallback)
            if engine is not None and engine.supported
        ]

        for attempt, engine in enumerate(engines):
            self._active_engine = engine
            try:
                await engine.speak(text, language)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if engine is self._primary:
                    self._metrics.primary_failures += 1
                logger.warning(
                    "Synthesis failed",
                    engine=engine.name,
                    language=language,
                    error_type=type(e).__name__,
                    error=str(e),
                    will_retry=attempt + 1 < len(engines),
                )
                continue
            finally:
                if self._active_engine is engine:
                    self._active_engine = None

            if attempt > 0:
                self._metrics.fallback_successes += 1
            return SynthesisOutcome.COMPLETED

        return SynthesisOutcome.FAILED

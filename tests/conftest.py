"""
Pytest configuration and fixtures.
"""

import asyncio
import os
import time
from dataclasses import replace
from typing import Any, List, Optional
from unittest.mock import patch

import pytest

from src.assistant.capture import CaptureController, SpeechRecognizer
from src.assistant.config import Config
from src.assistant.errors import SynthesisFailure
from src.assistant.models import ConversationType, TranscriptEvent
from src.assistant.orchestrator import ConversationOrchestrator
from src.assistant.synthesis import SpeechSynthesizer, SynthesisController


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "CHAT_ENDPOINT_URL": "http://chat.test/api/chat",
        "DEFAULT_LANGUAGE": "en-IN",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "LLM_PROVIDER": "groq",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.assistant.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeRecognizer(SpeechRecognizer):
    """In-memory recognizer; tests push transcripts with `emit`."""

    def __init__(self, timeline: List[str], supported: bool = True):
        self._timeline = timeline
        self._supported = supported
        self._queue: Optional[asyncio.Queue] = None
        self.started: List[str] = []
        self.stop_count = 0
        self.start_gate: Optional[asyncio.Event] = None

    @property
    def supported(self) -> bool:
        return self._supported

    @supported.setter
    def supported(self, value: bool) -> None:
        self._supported = value

    @property
    def listening(self) -> bool:
        return self._queue is not None

    async def start(self, language: str) -> None:
        if self.start_gate is not None:
            await self.start_gate.wait()
        self._queue = asyncio.Queue()
        self.started.append(language)
        self._timeline.append(f"capture_start:{language}")

    async def stop(self) -> None:
        self.stop_count += 1
        self._timeline.append("capture_stop")
        queue, self._queue = self._queue, None
        if queue is not None:
            queue.put_nowait(None)

    async def events(self):
        queue = self._queue
        if queue is None:
            return
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    def emit(self, text: str, is_final: bool = True) -> None:
        assert self._queue is not None, "recognizer is not listening"
        self._queue.put_nowait(TranscriptEvent(text=text, is_final=is_final))

    def end(self) -> None:
        queue, self._queue = self._queue, None
        if queue is not None:
            queue.put_nowait(None)


class FakeSynthesizer(SpeechSynthesizer):
    """Records utterances; can be made to fail or to block until released."""

    def __init__(self, timeline: List[str], name: str = "primary", supported: bool = True):
        self.name = name
        self._timeline = timeline
        self._supported = supported
        self.fail = False
        self.block = False
        self._release = asyncio.Event()
        self.spoken: List[tuple[str, str]] = []
        self.cancel_count = 0

    @property
    def supported(self) -> bool:
        return self._supported

    @supported.setter
    def supported(self, value: bool) -> None:
        self._supported = value

    async def speak(self, text: str, language: str) -> None:
        self.spoken.append((text, language))
        self._timeline.append(f"speak:{self.name}")
        if self.fail:
            raise SynthesisFailure("engine error", engine=self.name)
        if self.block:
            await self._release.wait()

    async def cancel(self) -> None:
        self.cancel_count += 1

    def release(self) -> None:
        self._release.set()


class FakeChatClient:
    """
    Scripted chat exchange.

    Each call to `send` consumes one script. Script items are deltas (str),
    gates (asyncio.Event, awaited before continuing) or an exception to raise.
    """

    def __init__(self):
        self.scripts: List[List[Any]] = []
        self.calls: List[tuple[list, Any]] = []

    def add_reply(self, *items: Any) -> None:
        self.scripts.append(list(items))

    async def send(self, history, conversation_type):
        self.calls.append((list(history), conversation_type))
        script = self.scripts.pop(0) if self.scripts else []
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item


@pytest.fixture
def fast_config() -> Config:
    """Config with every delay at zero and no auto-spoken greeting."""
    return Config(
        chat_endpoint_url="http://chat.test/api/chat",
        continuous_voice=False,
        speak_settle_ms=0,
        rearm_settle_ms=0,
        greeting_delay_ms=0,
        speak_greeting=False,
    )


@pytest.fixture
def timeline() -> List[str]:
    return []


@pytest.fixture
def recognizer(timeline) -> FakeRecognizer:
    return FakeRecognizer(timeline)


@pytest.fixture
def synthesizer(timeline) -> FakeSynthesizer:
    return FakeSynthesizer(timeline, name="primary")


@pytest.fixture
def fallback_synthesizer(timeline) -> FakeSynthesizer:
    return FakeSynthesizer(timeline, name="fallback")


@pytest.fixture
def chat_client() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def make_orchestrator(recognizer, synthesizer, fallback_synthesizer, chat_client, fast_config):
    """Factory for an orchestrator wired to the fakes. Keyword args override config fields."""

    def factory(
        *,
        conversation_type: ConversationType = ConversationType.PATIENT_ASSISTANT,
        language: Optional[str] = None,
        continuous_voice: Optional[bool] = None,
        muted: bool = False,
        **config_overrides: Any,
    ) -> ConversationOrchestrator:
        config = replace(fast_config, **config_overrides) if config_overrides else fast_config
        return ConversationOrchestrator(
            CaptureController(recognizer),
            SynthesisController(synthesizer, fallback_synthesizer),
            chat_client,
            conversation_type=conversation_type,
            language=language,
            continuous_voice=continuous_voice,
            muted=muted,
            config=config,
        )

    return factory


@pytest.fixture
def eventually():
    """Poll a predicate until it holds, yielding to the event loop in between."""

    async def wait(predicate, timeout: float = 1.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.001)

    return wait

"""
Configuration management for the voice health assistant.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv
import structlog

from src.assistant.language import DEFAULT_LANGUAGE, normalize_language_tag

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class SettleDelays:
    """Quiet intervals around the capture/synthesis handoff, in seconds."""
    speak_s: float
    rearm_s: float


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 7860
    log_level: str = "INFO"

    # Chat exchange (consumed by the streaming chat client)
    chat_endpoint_url: str = "http://localhost:7860/api/chat"
    chat_timeout_seconds: float = 60.0
    chat_connect_timeout_seconds: float = 10.0

    # Conversation
    # - continuous_voice re-arms capture after every spoken reply
    # - speak/rearm settle delays keep the assistant from hearing itself
    default_language: str = DEFAULT_LANGUAGE
    continuous_voice: bool = True
    speak_settle_ms: int = 500
    rearm_settle_ms: int = 1000
    greeting_delay_ms: int = 1000
    speak_timeout_seconds: float = 120.0
    speak_greeting: bool = True
    history_target_messages: int = 20
    settle_overrides: Dict[str, Tuple[int, int]] = field(default_factory=dict)

    # LLM backend for the chat exchange service (Groq/OpenAI)
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 512
    llm_temperature: float = 0.7

    def settle_delays(self, language: Optional[str] = None) -> SettleDelays:
        """Settle delays for a locale, honouring per-locale overrides."""
        speak_ms, rearm_ms = self.speak_settle_ms, self.rearm_settle_ms
        tag = normalize_language_tag(language) if language else None
        if tag and tag in self.settle_overrides:
            speak_ms, rearm_ms = self.settle_overrides[tag]
        return SettleDelays(speak_s=speak_ms / 1000.0, rearm_s=rearm_ms / 1000.0)

    @property
    def greeting_delay_seconds(self) -> float:
        return self.greeting_delay_ms / 1000.0

    @property
    def llm_model(self) -> str:
        return self.openai_model if self.llm_provider == "openai" else self.groq_model

    def validate(self) -> None:
        """Validate conversation settings."""
        if normalize_language_tag(self.default_language) is None:
            raise ConfigError(
                f"Invalid DEFAULT_LANGUAGE '{self.default_language}'."
            )

        negative = [
            name
            for name, value in (
                ("SPEAK_SETTLE_MS", self.speak_settle_ms),
                ("REARM_SETTLE_MS", self.rearm_settle_ms),
                ("GREETING_DELAY_MS", self.greeting_delay_ms),
            )
            if value < 0
        ]
        for tag, (speak_ms, rearm_ms) in self.settle_overrides.items():
            if speak_ms < 0 or rearm_ms < 0:
                negative.append(f"SETTLE_OVERRIDES[{tag}]")
        if negative:
            raise ConfigError(f"Delays must not be negative: {', '.join(negative)}")

        if self.history_target_messages <= 0:
            raise ConfigError("HISTORY_TARGET_MESSAGES must be positive.")

        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

    def validate_chat_backend(self) -> None:
        """Validate the keys needed to serve the chat exchange endpoint."""
        self.validate()
        missing = []

        if self.llm_provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if self.llm_provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            chat_endpoint_url=self.chat_endpoint_url,
            default_language=self.default_language,
            continuous_voice=self.continuous_voice,
            speak_settle_ms=self.speak_settle_ms,
            rearm_settle_ms=self.rearm_settle_ms,
            settle_overrides=sorted(self.settle_overrides),
            greeting_delay_ms=self.greeting_delay_ms,
            speak_greeting=self.speak_greeting,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _parse_settle_overrides(raw: str) -> Dict[str, Tuple[int, int]]:
    """
    Parse per-locale settle delays.

    Format: "hi-IN:600:1400,ta-IN:500:1200". Unknown locales and malformed
    entries are skipped with a warning.
    """
    overrides: Dict[str, Tuple[int, int]] = {}
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        tag = normalize_language_tag(parts[0]) if parts else None
        if len(parts) != 3 or tag is None:
            logger.warning("Ignoring settle override", entry=entry)
            continue
        try:
            overrides[tag] = (int(parts[1]), int(parts[2]))
        except ValueError:
            logger.warning("Ignoring settle override", entry=entry)
    return overrides


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    default_language_raw = os.getenv("DEFAULT_LANGUAGE", DEFAULT_LANGUAGE).strip()
    default_language = normalize_language_tag(default_language_raw) or default_language_raw

    config = Config(
        # Server
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Chat exchange
        chat_endpoint_url=os.getenv("CHAT_ENDPOINT_URL", "http://localhost:7860/api/chat"),
        chat_timeout_seconds=_get_float("CHAT_TIMEOUT_SECONDS", 60.0),
        chat_connect_timeout_seconds=_get_float("CHAT_CONNECT_TIMEOUT_SECONDS", 10.0),

        # Conversation
        default_language=default_language,
        continuous_voice=_get_bool("CONTINUOUS_VOICE", True),
        speak_settle_ms=_get_int("SPEAK_SETTLE_MS", 500),
        rearm_settle_ms=_get_int("REARM_SETTLE_MS", 1000),
        greeting_delay_ms=_get_int("GREETING_DELAY_MS", 1000),
        speak_timeout_seconds=_get_float("SPEAK_TIMEOUT_SECONDS", 120.0),
        speak_greeting=_get_bool("SPEAK_GREETING", True),
        history_target_messages=_get_int("HISTORY_TARGET_MESSAGES", 20),
        settle_overrides=_parse_settle_overrides(os.getenv("SETTLE_OVERRIDES", "")),

        # LLM backend
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 512),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config

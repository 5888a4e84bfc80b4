"""
Voice health assistant package.

Keep imports lightweight so modules like `src.assistant.language` can be used
without requiring the full runtime dependency set (e.g., dotenv) at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.assistant.config import Config
    from src.assistant.orchestrator import ConversationOrchestrator

__all__ = ["Config", "ConversationOrchestrator", "get_config"]


def __getattr__(name: str) -> Any:
    if name in ("Config", "get_config"):
        from src.assistant.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    if name == "ConversationOrchestrator":
        from src.assistant.orchestrator import ConversationOrchestrator

        return ConversationOrchestrator
    raise AttributeError(name)

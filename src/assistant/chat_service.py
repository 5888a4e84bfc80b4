"""
Chat exchange service (server side of `POST /api/chat`).

Provides:
- Request validation for `{messages, type}` bodies
- A system prompt per conversation type
- Streaming LLM replies via the OpenAI-compatible API (Groq or OpenAI)
- Framing as `data: {"text": ...}` lines terminated by `data: [DONE]`
"""

from typing import Any, AsyncGenerator, Dict, List, Optional

import msgspec
import structlog
from openai import AsyncOpenAI

from src.assistant.chat_client import DONE_SENTINEL, FRAME_PREFIX
from src.assistant.config import Config, get_config
from src.assistant.models import ConversationType, Role

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

encoder = msgspec.json.Encoder()

_ROLES = {role.value for role in Role}


class ChatRequestError(ValueError):
    """Raised when a chat request body is invalid."""
    pass


def get_system_prompt(conversation_type: ConversationType) -> str:
    """
    Get the system prompt for a conversation type.

    The patient assistant answers questions; the history intake gathers
    information for the doctor before an appointment.
    """
    if conversation_type == ConversationType.PATIENT_HISTORY:
        return """You are a friendly medical intake assistant collecting a patient's history before their appointment.

GOALS:
- Ask one question at a time about the reason for the visit, symptoms and their duration, current medications, allergies, past illnesses and surgeries, and family history.
- Acknowledge each answer briefly before asking the next question.
- When you have enough information, summarize it back and thank the patient.

LANGUAGE:
- Reply in the same language the patient uses.

SAFETY:
- Never diagnose or prescribe.
- If the patient describes an emergency (chest pain, difficulty breathing, severe bleeding), tell them to seek emergency care immediately.

STYLE:
- Replies are spoken aloud: keep them short (1-3 sentences), no lists, no markdown."""

    return """You are a digital health assistant for patients.

YOU CAN HELP WITH:
- Explaining medical reports in simple language
- Scheduling appointments
- Medication reminders and general medication information
- Symptom checking and general health information

LANGUAGE:
- Reply in the same language the patient uses.

SAFETY:
- You are not a doctor. Do not diagnose; recommend consulting a doctor for medical decisions.
- If the patient describes an emergency, tell them to seek emergency care immediately.
- Never share information about other patients.

STYLE:
- Replies may be spoken aloud: keep them concise and conversational.
- Avoid long lists and technical jargon."""


def parse_chat_request(body: Any) -> tuple[List[Dict[str, str]], ConversationType]:
    """
    Validate a chat request body.

    Raises:
        ChatRequestError: If the body is malformed
    """
    if not isinstance(body, dict):
        raise ChatRequestError("Request body must be a JSON object")

    try:
        conversation_type = ConversationType(body.get("type", ConversationType.PATIENT_ASSISTANT.value))
    except ValueError:
        raise ChatRequestError(f"Unknown conversation type: {body.get('type')}")

    raw_messages = body.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        raise ChatRequestError("messages must be a non-empty list")

    messages: List[Dict[str, str]] = []
    for index, message in enumerate(raw_messages):
        if not isinstance(message, dict):
            raise ChatRequestError(f"messages[{index}] must be an object")
        role = message.get("role")
        content = message.get("content")
        if role not in _ROLES or not isinstance(content, str):
            raise ChatRequestError(f"messages[{index}] must have a role and string content")
        messages.append({"role": role, "content": content})

    return messages, conversation_type


def format_frame(payload: Dict[str, Any]) -> str:
    return f"{FRAME_PREFIX}{encoder.encode(payload).decode('utf-8')}\n\n"


def format_done_frame() -> str:
    return f"{FRAME_PREFIX}{DONE_SENTINEL}\n\n"


def create_llm_client(config: Config) -> AsyncOpenAI:
    if config.llm_provider == "openai":
        return AsyncOpenAI(api_key=config.openai_api_key)
    return AsyncOpenAI(api_key=config.groq_api_key, base_url=GROQ_BASE_URL)


class ChatService:
    """Streams assistant replies for the chat exchange endpoint."""

    def __init__(self, config: Optional[Config] = None, client: Optional[Any] = None):
        self.config = config or get_config()
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = create_llm_client(self.config)
        return self._client

    async def stream_reply(
        self,
        messages: List[Dict[str, str]],
        conversation_type: ConversationType,
    ) -> AsyncGenerator[str, None]:
        """
        Generate a streaming reply.

        Yields:
            Text chunks as they're generated
        """
        request_messages = [{"role": "system", "content": get_system_prompt(conversation_type)}]
        request_messages.extend(messages)

        stream = await self.client.chat.completions.create(
            model=self.config.llm_model,
            messages=request_messages,
            stream=True,
            max_tokens=self.config.llm_max_tokens,
            temperature=self.config.llm_temperature,
        )

        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content

    async def stream_frames(
        self,
        messages: List[Dict[str, str]],
        conversation_type: ConversationType,
    ) -> AsyncGenerator[str, None]:
        """
        Stream a reply as wire frames.

        Always ends with the terminator; a failure mid-stream is reported as an
        `error` frame first.
        """
        chunks = 0
        try:
            async for text in self.stream_reply(messages, conversation_type):
                chunks += 1
                yield format_frame({"text": text})
        except Exception as e:
            logger.error(
                "LLM generation failed",
                conversation_type=conversation_type.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            yield format_frame({"error": "generation failed"})
        finally:
            logger.debug("Chat reply streamed", conversation_type=conversation_type.value, chunks=chunks)

        yield format_done_frame()

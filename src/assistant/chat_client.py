"""
Streaming chat client.

Issues one chat exchange per user turn and yields the assistant's reply as
text deltas. The response body is a sequence of newline-delimited frames:

    data: {"text": "Fever "}
    data: {"text": "is "}
    data: [DONE]

Transport chunks do not line up with frame boundaries, so incomplete lines
are carried over to the next chunk before splitting again. Frames that fail
to parse are skipped; they never abort the reply.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
import msgspec
import structlog

from src.assistant.config import Config, get_config
from src.assistant.errors import ChatTransportError, MalformedFrameError
from src.assistant.models import ConversationType, Message

logger = structlog.get_logger(__name__)

FRAME_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

decoder = msgspec.json.Decoder()


class FrameKind(str, Enum):
    DELTA = "delta"
    DONE = "done"
    OTHER = "other"


@dataclass(frozen=True)
class StreamFrame:
    kind: FrameKind
    text: str = ""
    payload: Optional[Any] = None


def parse_frame(line: str) -> Optional[StreamFrame]:
    """
    Parse a single line of the streamed body.

    Returns:
        None for lines that are not frames, otherwise the parsed frame

    Raises:
        MalformedFrameError: If a frame's payload is not valid JSON
    """
    line = line.rstrip("\r")
    if not line.startswith(FRAME_PREFIX):
        return None

    payload = line[len(FRAME_PREFIX):]
    if payload.strip() == DONE_SENTINEL:
        return StreamFrame(kind=FrameKind.DONE)

    try:
        data = decoder.decode(payload.encode("utf-8"))
    except msgspec.DecodeError as e:
        raise MalformedFrameError(payload, str(e))

    if not isinstance(data, dict):
        raise MalformedFrameError(payload, "payload is not an object")

    text = data.get("text")
    if isinstance(text, str) and text:
        return StreamFrame(kind=FrameKind.DELTA, text=text, payload=data)
    return StreamFrame(kind=FrameKind.OTHER, payload=data)


class FrameDecoder:
    """Reassembles frames from arbitrarily split transport chunks."""

    def __init__(self):
        self._remainder = ""
        self.malformed_frames = 0

    @property
    def pending(self) -> str:
        """Incomplete line waiting for the next chunk."""
        return self._remainder

    def feed(self, chunk: str) -> list[StreamFrame]:
        """Consume a transport chunk and return every complete frame in it."""
        data = self._remainder + chunk
        lines = data.split("\n")
        self._remainder = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> list[StreamFrame]:
        """Parse whatever is left once the transport has ended."""
        if not self._remainder:
            return []
        line, self._remainder = self._remainder, ""
        return self._parse_lines([line])

    def _parse_lines(self, lines: list[str]) -> list[StreamFrame]:
        frames: list[StreamFrame] = []
        for line in lines:
            try:
                frame = parse_frame(line)
            except MalformedFrameError as e:
                self.malformed_frames += 1
                logger.debug("Skipping malformed frame", error=str(e), payload=e.payload[:80])
                continue
            if frame is not None:
                frames.append(frame)
        return frames


class StreamingChatClient:
    """
    Client for the chat exchange endpoint.

    Holds no connection state between calls; each `send` opens and closes its
    own request. At most one exchange may be in flight per client.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config()
        self.url = url or self.config.chat_endpoint_url
        self._transport = transport
        self._in_flight = False

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            self.config.chat_timeout_seconds,
            connect=self.config.chat_connect_timeout_seconds,
        )

    async def send(
        self,
        history: Sequence[Message],
        conversation_type: ConversationType | str,
    ) -> AsyncIterator[str]:
        """
        Send the full history and yield reply deltas in arrival order.

        Raises:
            ChatTransportError: If the exchange fails or returns a non-success status
            RuntimeError: If another exchange is already in flight
        """
        if self._in_flight:
            raise RuntimeError("A chat exchange is already in flight")

        tag = conversation_type.value if isinstance(conversation_type, ConversationType) else conversation_type
        body = {"messages": [m.to_wire() for m in history], "type": tag}

        self._in_flight = True
        frames = FrameDecoder()
        delta_count = 0
        try:
            async with httpx.AsyncClient(timeout=self._timeout(), transport=self._transport) as client:
                async with client.stream("POST", self.url, json=body) as response:
                    if not response.is_success:
                        detail = (await response.aread())[:200].decode("utf-8", errors="replace")
                        logger.warning(
                            "Chat exchange rejected",
                            status_code=response.status_code,
                            response=detail,
                        )
                        raise ChatTransportError(
                            f"Chat exchange returned status {response.status_code}",
                            status_code=response.status_code,
                        )

                    async for chunk in response.aiter_text():
                        for frame in frames.feed(chunk):
                            if frame.kind == FrameKind.DONE:
                                logger.debug(
                                    "Chat exchange complete",
                                    deltas=delta_count,
                                    malformed_frames=frames.malformed_frames,
                                )
                                return
                            if frame.kind == FrameKind.DELTA:
                                delta_count += 1
                                yield frame.text
                            elif frame.payload and "error" in frame.payload:
                                logger.warning("Chat exchange reported error", error=str(frame.payload["error"])[:200])

                    for frame in frames.flush():
                        if frame.kind == FrameKind.DONE:
                            return
                        if frame.kind == FrameKind.DELTA:
                            delta_count += 1
                            yield frame.text

                    logger.warning(
                        "Chat stream ended without terminator",
                        deltas=delta_count,
                        malformed_frames=frames.malformed_frames,
                    )
        except httpx.HTTPError as e:
            logger.error("Chat exchange failed", error_type=type(e).__name__, error=str(e))
            raise ChatTransportError(f"Chat exchange failed: {e}") from e
        finally:
            self._in_flight = False

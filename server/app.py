"""
FastAPI server for the voice health assistant.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET /languages: Supported conversation locales
- POST /api/chat: Streaming chat exchange (`data: {...}` frames)
- WS /ws/conversation: One conversation view per connection
"""

import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse
import msgspec
import structlog
import uvicorn

from src.assistant.config import ConfigError, get_config, init_config


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_conversations: int = 0
    active_conversations: int = 0
    total_turns: int = 0
    capture_sessions: int = 0
    final_transcripts: int = 0
    utterances_spoken: int = 0
    fallback_utterances: int = 0
    synthesis_failures: int = 0
    chat_requests: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_conversations": self.total_conversations,
            "active_conversations": self.active_conversations,
            "total_turns": self.total_turns,
            "capture_sessions": self.capture_sessions,
            "final_transcripts": self.final_transcripts,
            "utterances_spoken": self.utterances_spoken,
            "fallback_utterances": self.fallback_utterances,
            "synthesis_failures": self.synthesis_failures,
            "chat_requests": self.chat_requests,
            "errors": self.errors,
        }

    def record_conversation(self, report: Dict[str, Any]) -> None:
        """Fold a finished conversation's counters into the server totals."""
        self.total_turns += report["total_turns"]
        self.capture_sessions += report["capture"]["sessions"]
        self.final_transcripts += report["capture"]["final_transcripts"]
        self.utterances_spoken += report["synthesis"]["completed"]
        self.fallback_utterances += report["synthesis"]["fallback_successes"]
        self.synthesis_failures += report["synthesis"]["failed"]


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice health assistant server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        try:
            config.validate_chat_backend()
        except ConfigError as e:
            # Conversations can still point at an external chat endpoint.
            logger.warning("Chat backend not configured", error=str(e))

        logger.info(
            "Server ready",
            port=config.port,
            chat_endpoint_url=config.chat_endpoint_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Voice Health Assistant",
    description="Voice-first patient assistant and history intake",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_conversations": metrics.active_conversations,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.get("/languages")
async def get_languages() -> JSONResponse:
    from src.assistant.language import list_languages

    return JSONResponse(
        content={
            "default": get_config().default_language,
            "languages": list_languages(),
        }
    )


@app.post("/api/chat")
async def chat(request: Request):
    """
    Chat exchange endpoint.

    Body: `{"messages": [{"role", "content"}, ...], "type": "patient-assistant"}`.
    Streams `data: {"text": ...}` frames and ends with `data: [DONE]`.
    """
    from src.assistant.chat_service import ChatRequestError, ChatService, parse_chat_request

    try:
        body = msgspec.json.decode(await request.body())
        messages, conversation_type = parse_chat_request(body)
    except (msgspec.DecodeError, ChatRequestError) as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    metrics.chat_requests += 1
    service = ChatService(get_config())

    return StreamingResponse(
        service.stream_frames(messages, conversation_type),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@app.websocket("/ws/conversation")
async def conversation_endpoint(
    websocket: WebSocket,
    type: str = Query("patient-assistant"),
    lang: Optional[str] = Query(None),
    continuous: Optional[bool] = Query(None),
) -> None:
    """
    Conversation WebSocket endpoint.

    Carries user controls, browser speech traffic and snapshots for one
    conversation view. Closing the socket tears the conversation down.
    """
    from src.assistant.models import ConversationType
    from src.assistant.session import ConversationSession

    try:
        conversation_type = ConversationType(type)
    except ValueError:
        await websocket.close(code=1008, reason=f"Unknown conversation type: {type}")
        return

    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_conversations += 1
    metrics.active_conversations += 1

    conversation_id = f"conv_{int(time.time() * 1000)}"
    structlog.contextvars.bind_contextvars(conversation_id=conversation_id)

    logger.info(
        "WebSocket connected",
        conversation_type=conversation_type.value,
        language=lang,
        active_conversations=metrics.active_conversations,
    )

    async def send_message(message: str) -> None:
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    session = ConversationSession(
        send_message,
        conversation_type=conversation_type,
        language=lang,
        continuous_voice=continuous,
    )

    disconnected = False
    try:
        while session.is_running:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected")
                disconnected = True
                break

            try:
                await session.handle_message(message)
            except Exception as e:
                logger.error("Error handling WebSocket message", error=str(e))
                metrics.errors += 1

        if not disconnected:
            # Client asked to close the conversation.
            await session.stop()
            await websocket.close()

    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1

    finally:
        try:
            await session.stop()
        except Exception as e:
            logger.error("Error stopping session", error=str(e))

        if session.orchestrator is not None:
            metrics.record_conversation(session.orchestrator.metrics_report())

        metrics.active_connections -= 1
        metrics.active_conversations -= 1

        logger.info("Conversation ended", active_conversations=metrics.active_conversations)
        structlog.contextvars.unbind_contextvars("conversation_id")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()

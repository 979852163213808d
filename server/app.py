"""
FastAPI server for the Conversation Relay voice agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twiml: Generate ConversationRelay TwiML for Twilio webhook
- WS /ws: ConversationRelay WebSocket
"""

import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any
import logging

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.relay.config import get_config, init_config, ConfigError
from src.relay.conversation import ConversationStore
from src.relay.llm import CompletionStream, initialize_completion
from src.relay.session import RelaySessionHandler, SessionMetrics
from src.relay.twiml import twiml_for_config


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
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

    # Set log level
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
    turns_completed: int = 0
    turns_failed: int = 0
    turns_interrupted: int = 0
    sentences_sent: int = 0
    errors: int = 0

    def add_session(self, session: SessionMetrics) -> None:
        self.turns_completed += session.turns_completed
        self.turns_failed += session.turns_failed
        self.turns_interrupted += session.turns_interrupted
        self.sentences_sent += session.sentences_sent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "turns_completed": self.turns_completed,
            "turns_failed": self.turns_failed,
            "turns_interrupted": self.turns_interrupted,
            "sentences_sent": self.sentences_sent,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Conversation Relay server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        # Process-wide session state, shared by every connection
        app.state.store = ConversationStore(max_history_turns=config.max_history_turns)
        app.state.completion = await initialize_completion(config)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            model=config.llm_model,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...", active_calls=len(app.state.store))
    await app.state.completion.close()


# Create FastAPI app
app = FastAPI(
    title="Conversation Relay Voice Agent",
    description="Streams LLM replies to Twilio ConversationRelay calls sentence by sentence",
    version="1.0.0",
    lifespan=lifespan,
)


def get_store(websocket: WebSocket) -> ConversationStore:
    """Transcript store created at startup."""
    return websocket.app.state.store


def get_completion(websocket: WebSocket) -> CompletionStream:
    """Completion client created at startup."""
    return websocket.app.state.completion


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    store = getattr(request.app.state, "store", None)
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": len(store) if store is not None else 0,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/twiml")
@app.get("/twiml")
@app.post("/incoming-call")
@app.get("/incoming-call")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for Twilio webhook.

    Returns TwiML that connects the call to our ConversationRelay endpoint.
    """
    return Response(
        content=twiml_for_config(get_config()),
        media_type="application/xml",
    )


@app.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    store: ConversationStore = Depends(get_store),
    completion: CompletionStream = Depends(get_completion),
) -> None:
    """
    ConversationRelay WebSocket endpoint.

    Receives caller prompts and streams back reply sentences for one call.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    logger.info(
        "WebSocket connected",
        active_connections=metrics.active_connections,
    )

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    session = RelaySessionHandler(send_message, store, completion, get_config())

    try:
        # Handle incoming messages
        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket connection closed", call_sid=session.call_sid)
                break

            try:
                await session.handle_message(message)
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_sid=session.call_sid,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_sid=session.call_sid,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        # Cleanup
        try:
            await session.close()
        except Exception as e:
            logger.error("Error closing session", error=str(e))

        metrics.add_session(session.metrics)
        metrics.active_connections -= 1

        logger.info(
            "Call ended",
            call_sid=session.call_sid,
            active_connections=metrics.active_connections,
        )


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

    logger.info(
        "Starting server",
        port=config.port,
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()

"""
FastAPI server for the cold-call simulator.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET /personas: Training targets and difficulties
- POST /realtime-session: Mint an OpenAI Realtime ephemeral session
- WS /ws: One simulated call per connection
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import structlog
import uvicorn

from src.callsim.config import get_config, init_config, ConfigError


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
    total_calls: int = 0
    active_calls: int = 0
    completed_calls: int = 0
    fallback_scores: int = 0
    end_reasons: Dict[str, int] = field(default_factory=dict)
    errors: int = 0

    def record_result(self, end_reason: str, fallback: bool) -> None:
        self.completed_calls += 1
        if fallback:
            self.fallback_scores += 1
        self.end_reasons[end_reason] = self.end_reasons.get(end_reason, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "completed_calls": self.completed_calls,
            "fallback_scores": self.fallback_scores,
            "end_reasons": dict(self.end_reasons),
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting cold-call simulator server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        # Fail fast on a wrong model name
        from src.callsim.llm import validate_openai_model
        await validate_openai_model(config.openai_api_key, config.openai_model)

        logger.info("Server ready", port=config.port, model=config.openai_model)

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Ring Academy Call Simulator",
    description="AI prospect for cold-call training",
    version="1.0.0",
    lifespan=lifespan,
)


class RealtimeSessionRequest(BaseModel):
    persona: str
    difficulty: str
    voice: Optional[str] = None


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.get("/personas")
async def get_personas() -> JSONResponse:
    from src.callsim.personas import list_personas
    from src.callsim.types import DIFFICULTIES

    return JSONResponse(content={"personas": list_personas(), "difficulties": list(DIFFICULTIES)})


@app.post("/realtime-session")
async def realtime_session(body: RealtimeSessionRequest) -> JSONResponse:
    """Ephemeral OpenAI Realtime session for the WebRTC variant."""
    from src.callsim.realtime import RealtimeSessionError, create_realtime_session
    from src.callsim.types import TrainingConfig

    training = TrainingConfig.create(body.persona, body.difficulty)
    try:
        session = await create_realtime_session(training, voice=body.voice)
    except RealtimeSessionError as e:
        metrics.errors += 1
        return JSONResponse(
            status_code=e.status_code if e.status_code >= 400 else 500,
            content={"error": str(e), "details": e.details},
        )
    return JSONResponse(content=session)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Browser call WebSocket endpoint.

    The browser sends recognition results and playback acknowledgments; the
    server drives the call and sends audio, state and the final result.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    call_id = f"call_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        call_id=call_id,
        active_calls=metrics.active_calls,
    )

    # Import here to avoid circular imports and speed up startup
    from src.callsim.bridge import BrowserCallBridge
    from src.callsim.llm import OpenAIProspect
    from src.callsim.scoring import OpenAICallScorer

    config = get_config()
    bridge = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    try:
        bridge = BrowserCallBridge(
            send_message,
            generator_factory=lambda training: OpenAIProspect(training, config),
            scorer=OpenAICallScorer(config),
            config=config,
        )
        bridge.start_sender()

        while True:
            try:
                message = await websocket.receive_text()
                await bridge.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if bridge:
            try:
                result = await bridge.close()
                if result is not None:
                    metrics.record_result(result.end_reason, result.fallback)
            except Exception as e:
                logger.error("Error closing call", error=str(e))

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Call ended",
            call_id=call_id,
            active_calls=metrics.active_calls,
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
    try:
        config = get_config()
    except Exception:
        # Use defaults if config fails
        config = type('Config', (), {'port': 7860, 'log_level': 'INFO'})()

    configure_logging(getattr(config, 'log_level', 'INFO'))

    logger.info(
        "Starting server",
        port=getattr(config, 'port', 7860),
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=getattr(config, 'port', 7860),
        log_level=getattr(config, 'log_level', 'INFO').lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()

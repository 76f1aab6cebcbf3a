"""
FastAPI application for the realtime voice relay.

Provides:
- WebSocket endpoint relaying client audio through OpenAI Realtime and ElevenLabs
- Ephemeral credential endpoint for direct browser connections
- Health check and info endpoints
- Static hosting of the web client
"""

# IMPORTANT: Configure logging FIRST, before any other imports
# This ensures verbose libraries don't spam debug logs
import logging

# Reduce noise from verbose libraries - set this BEFORE they're imported
logging.getLogger("websockets").setLevel(logging.WARNING)
logging.getLogger("websockets.client").setLevel(logging.WARNING)
logging.getLogger("websockets.server").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.websockets import WebSocketState

from ..utils.config import settings
from .credentials import CredentialIssuer
from .errors import ConfigurationError, UpstreamHandshakeError
from .session import ClientGone, RelaySession

# Now configure logging properly
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


SERVICE_VERSION = "1.0.0"
SHUTDOWN_TIMEOUT = 5.0

# Store active sessions for monitoring
active_sessions: dict[str, RelaySession] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting realtime voice relay...")
    logger.info(f"Realtime model: {settings.openai_realtime_model}")
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not configured; sessions will fail to start")
    if not settings.elevenlabs_api_key:
        logger.warning("ELEVENLABS_API_KEY is not configured; replies will have no audio")
    yield
    logger.info("Shutting down realtime voice relay...")
    sessions = list(active_sessions.values())
    for session in sessions:
        session.post(ClientGone("server shutdown"))
    if sessions:
        waiters = [asyncio.create_task(session.wait_closed()) for session in sessions]
        _, still_open = await asyncio.wait(waiters, timeout=SHUTDOWN_TIMEOUT)
        for waiter in still_open:
            waiter.cancel()
        if still_open:
            logger.warning(f"{len(still_open)} session(s) did not close within {SHUTDOWN_TIMEOUT}s")
    active_sessions.clear()


app = FastAPI(
    title="Realtime Voice Relay",
    description="Relays live voice conversations through OpenAI Realtime and ElevenLabs",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Health Check Endpoints
# =============================================================================


@app.get("/health")
async def health_check():
    """Report which upstream credentials are configured."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "openai_configured": bool(settings.openai_api_key),
        "elevenlabs_configured": bool(settings.elevenlabs_api_key),
        "active_sessions": len(active_sessions),
    }


@app.get("/api/info")
async def api_info():
    """Static service metadata."""
    return {
        "version": SERVICE_VERSION,
        "model": settings.openai_realtime_model,
        "tts": {
            "provider": "elevenlabs",
            "model": settings.elevenlabs_model_id,
            "voice_id": settings.elevenlabs_voice_id,
        },
        "endpoints": {
            "session": "/api/session",
            "relay": "/ws",
            "health": "/health",
            "info": "/api/info",
        },
    }


# =============================================================================
# Credential Endpoints
# =============================================================================


@app.get("/api/session")
async def create_session():
    """
    Mint an ephemeral Realtime credential for a browser client.

    The server-held API key never leaves the server; the client receives a
    short-lived secret instead.
    """
    try:
        credential = await CredentialIssuer().issue()
    except ConfigurationError as e:
        return JSONResponse(status_code=500, content={"error": str(e)})
    except UpstreamHandshakeError as e:
        if e.status is None:
            return JSONResponse(
                status_code=502,
                content={"error": "Could not reach OpenAI", "message": str(e)},
            )
        return JSONResponse(
            status_code=e.status,
            content={
                "error": "Error creating OpenAI session",
                "status": e.status,
                "details": e.details,
            },
        )

    logger.info("Ephemeral session created")
    return {
        "client_secret": credential.raw,
        "model": credential.model,
        "expires_at": credential.expires_at,
    }


@app.get("/api/proxy-session")
async def proxy_session():
    """Describe the server-side proxy mode."""
    return {
        "message": "Server-side relay available at /ws",
        "recommendation": "Use /api/session for direct client connections",
    }


# =============================================================================
# WebSocket Relay Endpoint
# =============================================================================


@app.websocket("/ws")
async def relay_stream(websocket: WebSocket):
    """
    WebSocket endpoint for one relayed conversation.

    The client sends ``{"type": "init"}`` and waits for ``session.ready``
    before streaming audio frames.
    """
    await websocket.accept()

    session = RelaySession(websocket)
    active_sessions[session.session_id] = session
    logger.info(f"WebSocket connection opened: {session.session_id}")

    try:
        await session.run()
    except Exception as e:
        logger.error(f"[{session.session_id}] Relay error: {e}")
    finally:
        active_sessions.pop(session.session_id, None)
        await session.close()
        if websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except RuntimeError:
                # Close raced with the client disconnecting
                pass
        logger.info(f"WebSocket connection closed: {session.session_id}")


# Static web client, mounted last so it does not shadow the API routes
_static_dir = Path(settings.static_dir)
if _static_dir.is_dir():
    app.mount("/", StaticFiles(directory=_static_dir, html=True), name="static")


# =============================================================================
# Main Entry Point
# =============================================================================


def main():
    """Run the FastAPI server."""
    import uvicorn

    uvicorn.run(
        "src.relay.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()

"""
PeerDrop — FastAPI application entry point.

Allocates the peer identity through LAN signaling on startup, then serves
the REST API and the WebSocket event stream for the frontend.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import EventBroadcaster
from config import API_HOST, API_PORT, LOG_LEVEL
from errors import IdentityInitFailure
from session.coordinator import SessionCoordinator
from signaling.lan import LanSignaling

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
coordinator = SessionCoordinator(LanSignaling())
broadcaster = EventBroadcaster()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop the session."""
    logger.info("Starting PeerDrop...")
    coordinator.on_event(broadcaster.handle_event)

    try:
        peer_id = await coordinator.start()
        logger.info(f"PeerDrop ready as {peer_id} — API: {API_HOST}:{API_PORT}")
    except IdentityInitFailure as e:
        # The API stays up so the frontend can show the error and retry.
        logger.error(f"Startup failed: {e}")

    try:
        yield
    finally:
        logger.info("Shutting down PeerDrop...")
        await coordinator.stop()


# --- FastAPI app ---
app = FastAPI(
    title="PeerDrop",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_routes(coordinator)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await broadcaster.connect(websocket, coordinator.snapshot().model_dump(mode="json"))
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await broadcaster.disconnect(websocket)
    except Exception:
        await broadcaster.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )

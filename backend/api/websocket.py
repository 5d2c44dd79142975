"""WebSocket fan-out of session events."""

import asyncio
import json
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Keeps the open WebSocket clients and pushes coordinator events to them."""

    def __init__(self) -> None:
        self._clients: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket, snapshot: dict) -> None:
        """Accept a client and send it the current session state."""
        await websocket.accept()
        await websocket.send_text(json.dumps({"event": "session", "data": snapshot}))
        async with self._lock:
            self._clients.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._clients)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._clients:
                self._clients.remove(websocket)
        logger.info(f"WebSocket client disconnected. Total: {len(self._clients)}")

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Callback for SessionCoordinator.on_event(); drops dead clients."""
        message = json.dumps({"event": event_type, "data": data}, default=str)
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._clients:
                try:
                    await ws.send_text(message)
                except Exception as e:
                    logger.debug(f"Dropping WebSocket client: {e}")
                    dead.append(ws)
            for ws in dead:
                self._clients.remove(ws)

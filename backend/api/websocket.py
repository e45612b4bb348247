"""WebSocket fan-out of discovery and transfer events."""

import asyncio
import json
import logging

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Keeps the UI's WebSocket connections and pushes every event to them."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, event: str, data) -> None:
        """Send ``{"event", "data"}`` to every client; drop the ones that fail."""
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json")
        elif isinstance(data, BaseException):
            data = {"error": str(data)}
        message = json.dumps({"event": event, "data": data})

        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data) -> None:
        """
        Event handler compatible with TransferManager.on_event()
        and DiscoveryService.on_device_change().
        """
        await self.broadcast(event_type, data)

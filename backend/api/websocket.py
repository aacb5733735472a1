"""WebSocket handler for real-time events."""

import asyncio
import json
import logging

from fastapi import WebSocket

from protocol.exceptions import AuthenticationError

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and broadcasts events."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
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

    async def broadcast(self, event: str, data: dict) -> None:
        """Broadcast an event to all connected WebSocket clients."""
        message = json.dumps({"event": event, "data": data}, default=str)
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """
        Event handler compatible with TransferManager.on_event()
        and DeviceManager.on_event().
        """
        await self.broadcast(event_type, data)

    async def handle_error(self, error: Exception) -> None:
        """Error handler compatible with LanService.on_error()."""
        if isinstance(error, AuthenticationError):
            data = {
                "type": "error",
                "message": (
                    f"Authentication failure for {error.device_name} "
                    f"({error.device_host}): the device certificate does not "
                    f"match the one pinned for it"
                ),
                "device_name": error.device_name,
                "device_host": error.device_host,
            }
        else:
            data = {"type": "error", "message": str(error)}

        await self.broadcast("notification", data)

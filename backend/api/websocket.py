"""WebSocket handler for state-change events."""

import asyncio
import json
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Fans client events out to every connected WebSocket."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket, snapshot: dict | None = None) -> None:
        """Accept a client and send it the current state before any deltas."""
        await websocket.accept()
        if snapshot is not None:
            await websocket.send_text(json.dumps({"event": "snapshot", "data": snapshot}))
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    async def handle_event(self, event: str, data: dict) -> None:
        """Compatible with BridgeClient.on_event()."""
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
        if dead:
            logger.debug(f"Dropped {len(dead)} dead WebSocket client(s)")

"""WebSocket fan-out of session events to the browser tabs."""

import asyncio
import json
import logging
from typing import Callable

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks /ws clients and pushes every session event to all of them."""

    def __init__(self) -> None:
        self._clients: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.append(websocket)
        logger.info(f"Event client connected. Total: {self.client_count}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._clients:
                self._clients.remove(websocket)
        logger.info(f"Event client disconnected. Total: {self.client_count}")

    async def broadcast(self, event: str, data: dict) -> None:
        """Send {"event", "data"} to every client, dropping the ones that fail."""
        message = json.dumps({"event": event, "data": data}, default=str)
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._clients:
                try:
                    await ws.send_text(message)
                except (WebSocketDisconnect, RuntimeError, OSError) as e:
                    logger.debug(f"Dropping event client: {e}")
                    dead.append(ws)
            for ws in dead:
                self._clients.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Callback for HostSession.on_event() and GuestSession.on_event()."""
        await self.broadcast(event_type, data)

    async def serve(self, websocket: WebSocket, snapshot: Callable[[], dict]) -> None:
        """Run one client: greet it with the current state, then hold it open."""
        await self.connect(websocket)
        try:
            await websocket.send_text(
                json.dumps({"event": "snapshot", "data": snapshot()}, default=str)
            )
            while True:
                # Clients only listen; anything they send is ignored
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(websocket)

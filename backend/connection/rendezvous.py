"""
WebSocket rendezvous client.

The rendezvous service only maps peer ids to dialable addresses. A
registration lasts as long as the registering WebSocket stays open.
"""

import json
import logging

import websockets

from errors import ConnectivityError

logger = logging.getLogger(__name__)


class RendezvousClient:
    """Registers this peer and looks up others on a rendezvous server."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._registration = None  # websocket held open while registered

    async def _request(self, ws, message: dict) -> dict:
        await ws.send(json.dumps(message))
        reply = json.loads(await ws.recv())
        if not reply.get("ok"):
            raise ConnectivityError(reply.get("error", "Rendezvous request failed"))
        return reply

    async def register(self, peer_id: str, host: str, port: int) -> None:
        """Claim `peer_id` for (host, port) until close() is called."""
        await self.close()
        try:
            ws = await websockets.connect(self.url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise ConnectivityError(f"Rendezvous unreachable at {self.url}: {e}") from e

        try:
            await self._request(
                ws, {"op": "register", "peer_id": peer_id, "host": host, "port": port}
            )
        except Exception:
            await ws.close()
            raise
        self._registration = ws
        logger.info(f"Registered {peer_id} at {host}:{port}")

    async def lookup(self, peer_id: str) -> tuple[str, int]:
        """Resolve a peer id to (host, port). Raises ConnectivityError."""
        try:
            async with websockets.connect(self.url) as ws:
                reply = await self._request(ws, {"op": "lookup", "peer_id": peer_id})
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise ConnectivityError(f"Rendezvous lookup failed: {e}") from e
        return reply["host"], int(reply["port"])

    async def close(self) -> None:
        """Drop the registration, if any."""
        if self._registration is not None:
            ws, self._registration = self._registration, None
            await ws.close()

"""WebSocket rendezvous service: peer id -> dialable address."""

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


class PeerAddress(BaseModel):
    host: str
    port: int


class RendezvousDirectory:
    """In-memory directory of registered peers."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[PeerAddress, WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def register(self, peer_id: str, address: PeerAddress, owner: WebSocket) -> bool:
        async with self._lock:
            if peer_id in self._entries:
                return False
            self._entries[peer_id] = (address, owner)
        logger.info(f"Rendezvous: {peer_id} -> {address.host}:{address.port}")
        return True

    def lookup(self, peer_id: str) -> PeerAddress | None:
        entry = self._entries.get(peer_id)
        return entry[0] if entry else None

    async def release(self, owner: WebSocket) -> None:
        """Forget every id registered through `owner`."""
        async with self._lock:
            gone = [pid for pid, (_, ws) in self._entries.items() if ws is owner]
            for pid in gone:
                del self._entries[pid]
        for pid in gone:
            logger.info(f"Rendezvous: {pid} released")

    def __len__(self) -> int:
        return len(self._entries)


directory = RendezvousDirectory()


async def _handle(websocket: WebSocket, message) -> dict:
    if not isinstance(message, dict):
        return {"ok": False, "error": "Expected a JSON object"}
    op = message.get("op")
    peer_id = message.get("peer_id")
    if not isinstance(peer_id, str) or not peer_id:
        return {"ok": False, "error": "peer_id is required"}

    if op == "register":
        try:
            address = PeerAddress(host=message.get("host"), port=message.get("port"))
        except ValidationError:
            return {"ok": False, "error": "host and port are required"}
        if not await directory.register(peer_id, address, websocket):
            return {"ok": False, "error": f"Peer id {peer_id} is already taken"}
        return {"ok": True}

    if op == "lookup":
        address = directory.lookup(peer_id)
        if address is None:
            return {"ok": False, "error": f"Could not find peer {peer_id}"}
        return {"ok": True, "host": address.host, "port": address.port}

    return {"ok": False, "error": f"Unknown op {op!r}"}


@router.websocket("/rendezvous")
async def rendezvous_endpoint(websocket: WebSocket):
    await websocket.accept()
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"ok": False, "error": "Invalid JSON"}))
                continue
            reply = await _handle(websocket, message)
            await websocket.send_text(json.dumps(reply))
    except WebSocketDisconnect:
        pass
    finally:
        await directory.release(websocket)

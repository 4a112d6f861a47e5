"""
Connection Registry: owns the live links of one provider.

Decodes every inbound unit, dispatches typed events to subscribers, and
implements the two-watermark capacity wait used by senders.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable

from pydantic import BaseModel, ConfigDict

from config import CAPACITY_POLL_INTERVAL, HIGH_WATERMARK, LOW_WATERMARK
from connection.provider import ConnectionProvider, Link
from errors import ConnectivityError, ProtocolViolation, TransportClosed
from protocol.codec import Payload, decode, encode

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    READY = "ready"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class PeerConnection(BaseModel):
    """Snapshot of one registered link."""
    connection_id: str
    peer_id: str
    open: bool
    buffered_amount: int


class StatusEvent(BaseModel):
    status: ConnectionStatus
    peer_id: str | None = None
    connection_id: str | None = None


class InboundData(BaseModel):
    """One decoded inbound unit and where it came from."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    connection_id: str
    peer_id: str
    data: Payload


Unsubscribe = Callable[[], None]


class ConnectionRegistry:
    """Live connections plus connection/data/status/error subscriptions."""

    def __init__(
        self,
        provider: ConnectionProvider,
        high_watermark: int = HIGH_WATERMARK,
        low_watermark: int = LOW_WATERMARK,
    ) -> None:
        if low_watermark > high_watermark:
            raise ValueError("low watermark must not exceed high watermark")
        self._provider = provider
        self.high_watermark = high_watermark
        self.low_watermark = low_watermark
        self._links: dict[str, Link] = {}
        self._closed_futures: dict[str, asyncio.Future] = {}
        self._listeners: dict[str, list[Callable]] = {
            "connection": [],
            "data": [],
            "status": [],
            "error": [],
        }
        self._destroyed = False
        self.accepting = True
        self.peer_id: str | None = None
        provider.on_connection(self._on_inbound)

    # --- Subscriptions ---

    def _subscribe(self, event: str, callback: Callable) -> Unsubscribe:
        self._listeners[event].append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        return unsubscribe

    def on_connection(self, callback: Callable[[PeerConnection], None]) -> Unsubscribe:
        return self._subscribe("connection", callback)

    def on_data(self, callback: Callable[[InboundData], None]) -> Unsubscribe:
        return self._subscribe("data", callback)

    def on_status(self, callback: Callable[[StatusEvent], None]) -> Unsubscribe:
        return self._subscribe("status", callback)

    def on_error(self, callback: Callable[[Exception], None]) -> Unsubscribe:
        return self._subscribe("error", callback)

    def _emit(self, event: str, data) -> None:
        """Deliver to every subscriber; one failing callback does not stop the rest."""
        for cb in list(self._listeners[event]):
            try:
                cb(data)
            except Exception as e:
                logger.error(f"{event} callback error: {e}", exc_info=True)

    # --- Lifecycle ---

    async def start(self, peer_id: str | None = None) -> str:
        """Register with the provider; emits status 'ready'."""
        self.peer_id = await self._provider.start(peer_id)
        self._emit("status", StatusEvent(status=ConnectionStatus.READY, peer_id=self.peer_id))
        return self.peer_id

    async def connect(self, remote_id: str) -> PeerConnection:
        """Open a connection to `remote_id`. Emits 'error' and re-raises on failure."""
        try:
            link = await self._provider.connect(remote_id)
        except ConnectivityError as e:
            logger.warning(f"Connect to {remote_id} failed: {e}")
            self._emit("error", e)
            raise
        return self._register(link)

    def _on_inbound(self, link: Link) -> None:
        if self._destroyed or not self.accepting:
            logger.info(f"Refusing inbound connection from {link.peer_id}")
            link.close()
            return
        self._register(link)

    def _register(self, link: Link) -> PeerConnection:
        cid = link.connection_id
        self._links[cid] = link
        self._closed_futures[cid] = asyncio.get_running_loop().create_future()
        snapshot = self._snapshot(link)
        self._emit("connection", snapshot)
        self._emit(
            "status",
            StatusEvent(status=ConnectionStatus.CONNECTED, peer_id=link.peer_id, connection_id=cid),
        )
        link.bind(
            on_data=lambda unit: self._on_unit(link, unit),
            on_close=lambda: self._on_link_closed(link),
        )
        logger.info(f"Connection {cid} to {link.peer_id} open")
        return snapshot

    def _on_unit(self, link: Link, unit: bytes) -> None:
        """Classify and dispatch synchronously, preserving arrival order."""
        try:
            payload = decode(unit)
        except ProtocolViolation as e:
            logger.warning(f"Bad unit from {link.connection_id}: {e}")
            self._emit("error", e)
            return
        self._emit(
            "data",
            InboundData(connection_id=link.connection_id, peer_id=link.peer_id, data=payload),
        )

    def _on_link_closed(self, link: Link) -> None:
        cid = link.connection_id
        if self._links.get(cid) is not link:
            return
        del self._links[cid]
        closed = self._closed_futures.pop(cid, None)
        if closed is not None and not closed.done():
            closed.set_exception(TransportClosed(f"Connection {cid} closed"))
            # Nobody may be waiting; keep the loop from warning about it
            closed.exception()
        logger.info(f"Connection {cid} to {link.peer_id} closed")
        self._emit(
            "status",
            StatusEvent(status=ConnectionStatus.DISCONNECTED, peer_id=link.peer_id, connection_id=cid),
        )

    async def destroy(self) -> None:
        """Close every connection and release all state. Idempotent."""
        if self._destroyed:
            return
        self._destroyed = True
        for link in list(self._links.values()):
            link.close()
            self._on_link_closed(link)
        await self._provider.stop()
        for listeners in self._listeners.values():
            listeners.clear()
        logger.info("Connection registry destroyed")

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    # --- Sending ---

    def send_to(self, connection_id: str, payload: Payload) -> bool:
        """Send one unit; silently dropped if the connection is not open."""
        link = self._links.get(connection_id)
        if link is None or not link.open:
            logger.debug(f"Dropping send to closed connection {connection_id}")
            return False
        try:
            link.send(encode(payload))
        except (TransportClosed, OSError) as e:
            logger.debug(f"Send to {connection_id} failed: {e}")
            return False
        return True

    def broadcast(self, payload: Payload) -> int:
        """Send to every open connection; returns how many accepted it."""
        unit = encode(payload)
        delivered = 0
        for cid, link in list(self._links.items()):
            if not link.open:
                continue
            try:
                link.send(unit)
                delivered += 1
            except Exception as e:
                logger.warning(f"Broadcast to {cid} failed: {e}")
        return delivered

    async def wait_for_capacity(self, connection_id: str) -> None:
        """
        Suspend until the link can take more data.

        Returns at once while the backlog is under the high watermark;
        otherwise waits for it to fall under the low watermark. Raises
        TransportClosed if the connection is gone or closes meanwhile.
        """
        link = self._links.get(connection_id)
        closed = self._closed_futures.get(connection_id)
        if link is None or closed is None or not link.open:
            raise TransportClosed(f"Connection {connection_id} is not open")
        if link.buffered_amount < self.high_watermark:
            return

        while link.buffered_amount >= self.low_watermark:
            # Wakes early, with the exception, if the connection closes
            await asyncio.wait({closed}, timeout=CAPACITY_POLL_INTERVAL)
            if closed.done():
                closed.result()
            if not link.open:
                raise TransportClosed(f"Connection {connection_id} closed")

    # --- Introspection ---

    def _snapshot(self, link: Link) -> PeerConnection:
        return PeerConnection(
            connection_id=link.connection_id,
            peer_id=link.peer_id,
            open=link.open,
            buffered_amount=link.buffered_amount,
        )

    def get(self, connection_id: str) -> PeerConnection | None:
        link = self._links.get(connection_id)
        return self._snapshot(link) if link else None

    def is_open(self, connection_id: str) -> bool:
        link = self._links.get(connection_id)
        return link is not None and link.open

    def connections(self) -> list[PeerConnection]:
        return [self._snapshot(link) for link in self._links.values()]

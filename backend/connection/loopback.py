"""
In-process connection provider.

Both ends live in the same event loop. Units are delivered in order on a
later loop iteration, and a link can be paused to let its backlog grow,
which is how the backpressure paths get exercised without a network.
"""

import asyncio
import logging
import uuid
from collections import deque

from connection.provider import ConnectionProvider, Link
from errors import ConnectivityError, TransportClosed

logger = logging.getLogger(__name__)


class LoopbackHub:
    """Maps peer ids to providers, standing in for the rendezvous service."""

    def __init__(self) -> None:
        self._providers: dict[str, "LoopbackProvider"] = {}

    def register(self, peer_id: str, provider: "LoopbackProvider") -> None:
        if peer_id in self._providers:
            raise ConnectivityError(f"Peer id {peer_id} is already taken")
        self._providers[peer_id] = provider

    def unregister(self, peer_id: str) -> None:
        self._providers.pop(peer_id, None)

    def lookup(self, peer_id: str) -> "LoopbackProvider":
        provider = self._providers.get(peer_id)
        if provider is None:
            raise ConnectivityError(f"Could not find peer {peer_id}")
        return provider


class LoopbackLink(Link):
    """One end of an in-memory link."""

    def __init__(self, connection_id: str, peer_id: str) -> None:
        super().__init__(connection_id, peer_id)
        self.remote: LoopbackLink | None = None
        self._queue: deque[bytes] = deque()
        self._buffered = 0
        self._open = True
        self._paused = False
        self._flush_scheduled = False
        self.sent_units = 0

    @property
    def open(self) -> bool:
        return self._open

    @property
    def buffered_amount(self) -> int:
        return self._buffered

    def send(self, unit: bytes) -> None:
        if not self._open:
            raise TransportClosed(f"Link {self.connection_id} is closed")
        self._queue.append(unit)
        self._buffered += len(unit)
        self.sent_units += 1
        self._schedule_flush()

    def pause(self) -> None:
        """Stop handing units to the remote end; the backlog grows."""
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._flush_scheduled or self._paused:
            return
        self._flush_scheduled = True
        asyncio.get_running_loop().call_soon(self._flush)

    def _flush(self) -> None:
        self._flush_scheduled = False
        while self._queue and not self._paused:
            unit = self._queue.popleft()
            self._buffered -= len(unit)
            if self.remote is not None and self.remote.open:
                self.remote._deliver(unit)

    def close(self) -> None:
        """Graceful close: queued units still reach the remote end."""
        if not self._open:
            return
        self._open = False
        asyncio.get_running_loop().call_soon(self._finish_close)

    def _finish_close(self) -> None:
        self._paused = False
        self._flush()
        self._notify_closed()
        if self.remote is not None and self.remote.open:
            self.remote._open = False
            self.remote._queue.clear()
            self.remote._buffered = 0
            self.remote._notify_closed()

    def sever(self) -> None:
        """Abrupt loss of the link: both ends close, queued units are dropped."""
        for end in (self, self.remote):
            if end is None or not end._open:
                continue
            end._open = False
            end._queue.clear()
            end._buffered = 0
            end._notify_closed()


class LoopbackProvider(ConnectionProvider):
    """Provider whose peers are other LoopbackProviders on the same hub."""

    def __init__(self, hub: LoopbackHub) -> None:
        super().__init__()
        self._hub = hub
        self._links: dict[str, LoopbackLink] = {}

    async def start(self, peer_id: str | None = None) -> str:
        peer_id = peer_id or f"peer-{uuid.uuid4().hex[:12]}"
        self._hub.register(peer_id, self)
        self.peer_id = peer_id
        logger.info(f"Loopback provider registered as {peer_id}")
        return peer_id

    async def connect(self, peer_id: str) -> LoopbackLink:
        if self.peer_id is None:
            raise ConnectivityError("Provider not started")
        remote_provider = self._hub.lookup(peer_id)

        connection_id = f"lb-{uuid.uuid4().hex[:12]}"
        local = LoopbackLink(connection_id, peer_id)
        remote = LoopbackLink(connection_id, self.peer_id)
        local.remote, remote.remote = remote, local

        self._links[connection_id] = local
        remote_provider._links[connection_id] = remote
        # The remote side learns about the link on a later loop iteration
        asyncio.get_running_loop().call_soon(remote_provider._emit_connection, remote)
        await asyncio.sleep(0)
        return local

    def links(self) -> list[LoopbackLink]:
        return list(self._links.values())

    async def stop(self) -> None:
        for link in list(self._links.values()):
            link.close()
        self._links.clear()
        if self.peer_id is not None:
            self._hub.unregister(self.peer_id)
        # Let the close callbacks run before returning
        await asyncio.sleep(0)

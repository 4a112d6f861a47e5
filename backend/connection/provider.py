"""
Connection Provider interface.

A provider turns a peer id into a live, ordered, reliable, message-oriented
link. The registry only ever talks to providers through these two classes.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable

logger = logging.getLogger(__name__)

DataCallback = Callable[[bytes], None]
CloseCallback = Callable[[], None]
ConnectionCallback = Callable[["Link"], None]


class Link(ABC):
    """One connection to a remote peer, carrying framed units."""

    def __init__(self, connection_id: str, peer_id: str) -> None:
        self.connection_id = connection_id
        self.peer_id = peer_id
        self._on_data: DataCallback | None = None
        self._on_close: CloseCallback | None = None
        # Units that arrive before anybody listens are held, not lost
        self._pending: list[bytes] = []
        self._close_seen = False
        self._close_reported = False

    def bind(self, on_data: DataCallback, on_close: CloseCallback) -> None:
        """Attach the listener and flush whatever arrived before it."""
        self._on_data = on_data
        self._on_close = on_close
        pending, self._pending = self._pending, []
        for unit in pending:
            on_data(unit)
        if self._close_seen:
            self._report_close()

    def _deliver(self, unit: bytes) -> None:
        if self._on_data is None:
            self._pending.append(unit)
        else:
            self._on_data(unit)

    def _notify_closed(self) -> None:
        """Called by implementations once the link is down for good."""
        self._close_seen = True
        if self._on_close is not None:
            self._report_close()

    def _report_close(self) -> None:
        if self._close_reported:
            return
        self._close_reported = True
        self._on_close()

    @property
    @abstractmethod
    def open(self) -> bool:
        ...

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        """Bytes accepted by send() but not yet handed to the network."""

    @abstractmethod
    def send(self, unit: bytes) -> None:
        """Queue one framed unit. Never blocks."""

    @abstractmethod
    def close(self) -> None:
        ...


class ConnectionProvider(ABC):
    """Rendezvous plus transport, seen from one peer."""

    def __init__(self) -> None:
        self._connection_callbacks: list[ConnectionCallback] = []
        self.peer_id: str | None = None

    def on_connection(self, callback: ConnectionCallback) -> None:
        """Register callback: fn(link) for inbound connections."""
        self._connection_callbacks.append(callback)

    def _emit_connection(self, link: Link) -> None:
        for cb in self._connection_callbacks:
            try:
                cb(link)
            except Exception as e:
                logger.error(f"Connection callback error: {e}")

    @abstractmethod
    async def start(self, peer_id: str | None = None) -> str:
        """Claim `peer_id` (or a random one) and start accepting links."""

    @abstractmethod
    async def connect(self, peer_id: str) -> Link:
        """Open a link to `peer_id`. Raises ConnectivityError."""

    @abstractmethod
    async def stop(self) -> None:
        ...

"""
Encrypted TCP connection provider.

Handshake: each side sends its raw X25519 public key, both derive an
AES-256-GCM link key, then the dialing side sends a sealed hello naming
itself and the connection id. Every later frame is a 4-byte length
followed by a sealed wire unit.
"""

import asyncio
import json
import logging
import struct
import uuid

from config import ADVERTISED_HOST, CONNECT_TIMEOUT, LINK_HOST
from connection.provider import ConnectionProvider, Link
from connection.rendezvous import RendezvousClient
from errors import ConnectivityError, ProtocolViolation, TransportClosed
from security.crypto import (
    PUBLIC_KEY_SIZE,
    FrameCipher,
    derive_link_key,
    generate_keypair,
)

logger = logging.getLogger(__name__)

LENGTH_FORMAT = "!I"
LENGTH_SIZE = struct.calcsize(LENGTH_FORMAT)
MAX_SEALED_SIZE = 64 * 1024 * 1024


async def read_sealed(reader: asyncio.StreamReader, cipher: FrameCipher) -> bytes:
    """Read one length-prefixed sealed frame and return the plaintext."""
    header = await reader.readexactly(LENGTH_SIZE)
    (length,) = struct.unpack(LENGTH_FORMAT, header)
    if length > MAX_SEALED_SIZE:
        raise ProtocolViolation(f"Frame too large: {length}")
    return cipher.open(await reader.readexactly(length))


def seal_frame(cipher: FrameCipher, plaintext: bytes) -> bytes:
    sealed = cipher.seal(plaintext)
    return struct.pack(LENGTH_FORMAT, len(sealed)) + sealed


class TcpLink(Link):
    """A link over one asyncio stream pair."""

    def __init__(
        self,
        connection_id: str,
        peer_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        cipher: FrameCipher,
    ) -> None:
        super().__init__(connection_id, peer_id)
        self._reader = reader
        self._writer = writer
        self._cipher = cipher
        self._closed = False

    @property
    def open(self) -> bool:
        return not self._closed and not self._writer.is_closing()

    @property
    def buffered_amount(self) -> int:
        return self._writer.transport.get_write_buffer_size()

    def send(self, unit: bytes) -> None:
        if not self.open:
            raise TransportClosed(f"Link {self.connection_id} is closed")
        # No drain here: backpressure is the registry's job, via buffered_amount
        self._writer.write(seal_frame(self._cipher, unit))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()

    async def pump(self) -> None:
        """Read frames until the stream ends, delivering them in order."""
        try:
            while True:
                self._deliver(await read_sealed(self._reader, self._cipher))
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        except ProtocolViolation as e:
            logger.warning(f"Dropping link {self.connection_id}: {e}")
        finally:
            self.close()
            self._notify_closed()


class TcpProvider(ConnectionProvider):
    """Listens on a TCP port and publishes it through the rendezvous service."""

    def __init__(
        self,
        rendezvous: RendezvousClient,
        host: str = LINK_HOST,
        port: int = 0,
        advertised_host: str = ADVERTISED_HOST,
    ) -> None:
        super().__init__()
        self._rendezvous = rendezvous
        self._host = host
        self._port = port
        self._advertised_host = advertised_host
        self._server: asyncio.Server | None = None
        self._links: dict[str, TcpLink] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        return self._port

    async def start(self, peer_id: str | None = None) -> str:
        self._server = await asyncio.start_server(
            self._handle_incoming, self._host, self._port
        )
        self._port = self._server.sockets[0].getsockname()[1]
        peer_id = peer_id or f"peer-{uuid.uuid4().hex[:12]}"
        try:
            await self._rendezvous.register(peer_id, self._advertised_host, self._port)
        except ConnectivityError:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            raise
        self.peer_id = peer_id
        logger.info(f"TCP provider {peer_id} listening on port {self._port}")
        return peer_id

    async def connect(self, peer_id: str) -> TcpLink:
        if self.peer_id is None:
            raise ConnectivityError("Provider not started")
        host, port = await self._rendezvous.lookup(peer_id)

        writer: asyncio.StreamWriter | None = None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=CONNECT_TIMEOUT
            )
            private_key, pub_bytes = generate_keypair()
            writer.write(pub_bytes)
            await writer.drain()
            peer_pub = await asyncio.wait_for(
                reader.readexactly(PUBLIC_KEY_SIZE), timeout=CONNECT_TIMEOUT
            )
            cipher = FrameCipher(derive_link_key(private_key, peer_pub))

            connection_id = f"tcp-{uuid.uuid4().hex[:12]}"
            hello = json.dumps({"peer_id": self.peer_id, "connection_id": connection_id})
            writer.write(seal_frame(cipher, hello.encode("utf-8")))
            await writer.drain()
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, ProtocolViolation) as e:
            if writer is not None:
                writer.close()
            raise ConnectivityError(f"Could not connect to {peer_id} at {host}:{port}: {e}") from e

        link = TcpLink(connection_id, peer_id, reader, writer, cipher)
        self._links[connection_id] = link
        task = asyncio.create_task(self._run_link(link))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Connected to {peer_id} ({connection_id})")
        return link

    async def _handle_incoming(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handshake with a dialing peer, then pump its frames."""
        try:
            peer_pub = await asyncio.wait_for(
                reader.readexactly(PUBLIC_KEY_SIZE), timeout=CONNECT_TIMEOUT
            )
            private_key, pub_bytes = generate_keypair()
            writer.write(pub_bytes)
            await writer.drain()
            cipher = FrameCipher(derive_link_key(private_key, peer_pub))
            hello = json.loads(
                await asyncio.wait_for(read_sealed(reader, cipher), timeout=CONNECT_TIMEOUT)
            )
            peer_id = str(hello["peer_id"])
            connection_id = str(hello["connection_id"])
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError,
                ProtocolViolation, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Inbound handshake failed: {e}")
            writer.close()
            return

        link = TcpLink(connection_id, peer_id, reader, writer, cipher)
        self._links[connection_id] = link
        logger.info(f"Inbound link from {peer_id} ({connection_id})")
        self._emit_connection(link)
        await self._run_link(link)

    async def _run_link(self, link: TcpLink) -> None:
        try:
            await link.pump()
        finally:
            self._links.pop(link.connection_id, None)

    async def stop(self) -> None:
        for link in list(self._links.values()):
            link.close()
        for task in list(self._tasks):
            task.cancel()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self._rendezvous.close()
        logger.info("TCP provider stopped")

"""
Host session: offers files to any number of guests.

Owns the connection registry, the catalogue, the password gate, the
sender engine and the liveness probe, and enforces the session's expiry
time and download limit.
"""

import asyncio
import logging
import mimetypes
import secrets
import time
import uuid
from pathlib import Path

from config import (
    DEFAULT_EXPIRY_MINUTES,
    DEFAULT_MIME_TYPE,
    EXPIRY_CHECK_INTERVAL,
    HIGH_WATERMARK,
    LIMIT_SHUTDOWN_DELAY,
    LOW_WATERMARK,
    PEER_ID_PREFIX,
    PING_INTERVAL,
    SHORT_CODE_ALPHABET,
    SHORT_CODE_LENGTH,
)
from connection.provider import ConnectionProvider
from connection.registry import (
    ConnectionRegistry,
    ConnectionStatus,
    InboundData,
    PeerConnection,
    StatusEvent,
)
from errors import ConnectivityError, QuotaExceeded
from protocol.models import (
    ControlMessage,
    ErrorPayload,
    FileMeta,
    FileRequest,
    MessageType,
    PasswordAttempt,
    TextPayload,
)
from session.chat import ChatLog, clean_text
from session.events import EventEmitter
from session.gate import SessionGate
from session.liveness import LivenessProbe
from session.models import ChatSender, ExpiryReason, HostedFile, SessionConfig
from transfer.models import TransferState
from transfer.sender import SenderEngine

logger = logging.getLogger(__name__)

START_ATTEMPTS = 3


def generate_short_code() -> str:
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_LENGTH))


def peer_id_for(code: str) -> str:
    """Rendezvous id for a human-entered session code."""
    return f"{PEER_ID_PREFIX}{code.strip()}"


class HostSession(EventEmitter):
    """The sending side of a share."""

    def __init__(
        self,
        provider: ConnectionProvider,
        config: SessionConfig | None = None,
        high_watermark: int = HIGH_WATERMARK,
        low_watermark: int = LOW_WATERMARK,
        ping_interval: float = PING_INTERVAL,
        shutdown_delay: float = LIMIT_SHUTDOWN_DELAY,
    ) -> None:
        super().__init__()
        self.config = config or SessionConfig()
        self.registry = ConnectionRegistry(provider, high_watermark, low_watermark)
        self._files: dict[str, HostedFile] = {}
        self.gate = SessionGate(self.config, self.catalogue)
        self.sender = SenderEngine(
            self.registry,
            chunk_size=self.config.chunk_size,
            on_state=self._on_transfer_state,
            on_progress=self._on_transfer_progress,
            on_complete=self._on_transfer_complete,
        )
        self.liveness = LivenessProbe(
            self.registry, ping_interval, on_latency=self._on_latency
        )
        self.chat = ChatLog()
        self._shutdown_delay = shutdown_delay

        self.code: str | None = None
        self.peer_id: str | None = None
        self.total_downloads = 0
        self.total_bytes_sent = 0
        self.expired_reason: ExpiryReason | None = None
        self._expiry_task: asyncio.Task | None = None
        self._shutdown_task: asyncio.Task | None = None
        self._closed = False

        self.registry.on_connection(self._on_connection)
        self.registry.on_data(self._on_data)
        self.registry.on_status(self._on_status)
        self.registry.on_error(self._on_error)

    # --- Lifecycle ---

    @property
    def running(self) -> bool:
        return self.peer_id is not None and not self._closed

    async def start(self, expiry_minutes: float | None = DEFAULT_EXPIRY_MINUTES) -> str:
        """Claim a fresh short code and start accepting guests. Returns the code."""
        last_error: ConnectivityError | None = None
        for _ in range(START_ATTEMPTS):
            code = generate_short_code()
            try:
                self.peer_id = await self.registry.start(peer_id_for(code))
            except ConnectivityError as e:
                last_error = e
                logger.warning(f"Code {code} unavailable: {e}")
                continue
            self.code = code
            break
        else:
            raise last_error or ConnectivityError("Could not claim a session code")

        if expiry_minutes is not None and self.config.expires_at is None:
            self.config.expires_at = time.time() + expiry_minutes * 60
        if self.config.expires_at is not None:
            self._expiry_task = asyncio.create_task(self._watch_expiry())

        logger.info(f"Hosting session {self.code}")
        self._emit("session_state", self.snapshot())
        return self.code

    async def _watch_expiry(self) -> None:
        while not self._closed:
            if time.time() >= self.config.expires_at:
                self._expire(ExpiryReason.TIME)
                return
            await asyncio.sleep(EXPIRY_CHECK_INTERVAL)

    def _expire(self, reason: ExpiryReason) -> None:
        """Stop taking guests and requests; tear down once in-flight work ends."""
        if self.expired_reason is not None:
            return
        self.expired_reason = reason
        self.registry.accepting = False
        logger.info(f"Session {self.code} expired: {reason.value}")
        self._emit("session_expired", {"reason": reason.value})
        if reason == ExpiryReason.LIMIT:
            self._notify("warning", "Download limit reached. Sharing will stop.")
        else:
            self._notify("warning", "Session time limit reached. Sharing will stop.")
        self._shutdown_task = asyncio.create_task(self._graceful_shutdown())

    async def _graceful_shutdown(self) -> None:
        await asyncio.sleep(self._shutdown_delay)
        while self.sender.active_count:
            await asyncio.sleep(0.1)
        await self._teardown()

    async def _teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        if self._expiry_task and self._expiry_task is not current:
            self._expiry_task.cancel()
        self.liveness.stop()
        await self.sender.stop()
        await self.registry.destroy()
        logger.info(f"Session {self.code} closed")
        self._emit("session_state", self.snapshot())

    async def stop(self) -> None:
        """User-initiated stop: immediate teardown, catalogue and chat cleared."""
        if self.expired_reason is None:
            self.expired_reason = ExpiryReason.USER
        current = asyncio.current_task()
        if self._shutdown_task and self._shutdown_task is not current:
            self._shutdown_task.cancel()
        await self._teardown()
        self._files.clear()
        self.chat.clear()

    # --- Catalogue ---

    def catalogue(self) -> list[FileMeta]:
        return [hosted.meta for hosted in self._files.values()]

    def files(self) -> list[HostedFile]:
        return list(self._files.values())

    def add_file(self, path: str | Path, mime_type: str | None = None) -> FileMeta:
        """Offer a file from disk; its id never changes afterwards."""
        path = Path(path)
        if not path.is_file():
            raise ValueError(f"Not a file: {path}")
        if mime_type is None:
            mime_type = mimetypes.guess_type(path.name)[0] or DEFAULT_MIME_TYPE
        meta = FileMeta(
            id=uuid.uuid4().hex[:8],
            name=path.name,
            size=path.stat().st_size,
            mime_type=mime_type,
        )
        self._files[meta.id] = HostedFile(meta=meta, path=path)
        logger.info(f"Hosting {meta.name} as {meta.id}")
        self._publish_manifest()
        return meta

    def remove_file(self, file_id: str) -> None:
        del self._files[file_id]
        self._publish_manifest()

    def _publish_manifest(self) -> None:
        """Re-send the catalogue to every connection that may see it."""
        if not self.running:
            return
        for conn in self.registry.connections():
            if self.gate.is_unlocked(conn.connection_id):
                self._send_manifest(conn.connection_id)
        self._emit("session_state", self.snapshot())

    def _send_manifest(self, connection_id: str) -> None:
        self.registry.send_to(
            connection_id,
            ControlMessage.make(MessageType.MANIFEST, self.gate.manifest_for(connection_id)),
        )

    # --- Registry events ---

    def _on_connection(self, conn: PeerConnection) -> None:
        self._send_manifest(conn.connection_id)
        self.liveness.watch(conn.connection_id)
        self._emit("peer_connected", conn.model_dump())

    def _on_status(self, event: StatusEvent) -> None:
        if event.status != ConnectionStatus.DISCONNECTED:
            return
        cid = event.connection_id
        self.sender.fail_connection(cid)
        self.gate.forget(cid)
        self.liveness.unwatch(cid)
        self._emit("peer_disconnected", event.model_dump())

    def _on_error(self, error: Exception) -> None:
        logger.warning(f"Connection error: {error}")
        self._notify("error", str(error))

    def _on_data(self, event: InboundData) -> None:
        cid = event.connection_id
        message = event.data
        if isinstance(message, bytes):
            logger.warning(f"Protocol violation: guest {cid} sent a binary frame; dropped")
            return
        if self.liveness.handle(cid, message):
            return

        try:
            if message.type == MessageType.VERIFY_PASSWORD:
                self._on_password(cid, message.parse_payload(PasswordAttempt).password)
            elif message.type == MessageType.REQUEST_FILE:
                self._on_request(cid, message.parse_payload(FileRequest).file_id)
            elif message.type == MessageType.TEXT:
                text = message.parse_payload(TextPayload).text
                chat = self.chat.add(text, ChatSender.PEER, connection_id=cid)
                self._emit("chat_message", chat.model_dump(mode="json"))
            elif message.type == MessageType.NUDGE:
                self._emit("nudge", {"connection_id": cid})
            else:
                logger.debug(f"Ignoring {message.type.value} from {cid}")
        except ValueError as e:
            logger.warning(f"Malformed {message.type.value} from {cid}: {e}")

    def _on_password(self, connection_id: str, password: str) -> None:
        if self.gate.verify(connection_id, password):
            self.registry.send_to(connection_id, ControlMessage(type=MessageType.PASSWORD_CORRECT))
            self._send_manifest(connection_id)
        else:
            self.registry.send_to(connection_id, ControlMessage(type=MessageType.PASSWORD_INCORRECT))

    def _refuse(self, connection_id: str, file_id: str, code: str, message: str) -> None:
        logger.info(f"Refusing {file_id} to {connection_id}: {message}")
        self.registry.send_to(
            connection_id,
            ControlMessage.make(
                MessageType.ERROR, ErrorPayload(message=message, code=code, file_id=file_id)
            ),
        )

    def _on_request(self, connection_id: str, file_id: str) -> None:
        if self.expired_reason is not None:
            error = QuotaExceeded(self.expired_reason.value)
            self._refuse(connection_id, file_id, "quota_exceeded", str(error))
            return
        if not self.gate.is_unlocked(connection_id):
            self._refuse(connection_id, file_id, "locked", "Password required")
            return
        hosted = self._files.get(file_id)
        if hosted is None:
            self._refuse(connection_id, file_id, "not_found", "No such file")
            return
        self.sender.start(connection_id, hosted)

    # --- Transfer callbacks ---

    def _on_transfer_state(self, state: TransferState) -> None:
        self._emit("transfer_state", state.model_dump(mode="json"))

    def _on_transfer_progress(self, state: TransferState) -> None:
        self._emit("transfer_progress", state.model_dump(mode="json"))

    def _on_transfer_complete(self, state: TransferState) -> None:
        hosted = self._files.get(state.file_id)
        if hosted is not None:
            hosted.downloads += 1
            hosted.last_downloaded_at = time.time()
        self.total_downloads += 1
        self.total_bytes_sent += state.expected_size
        self._notify("success", f"'{state.file_name}' sent successfully!")

        limit = self.config.max_downloads
        if limit is not None and self.total_downloads >= limit:
            self._expire(ExpiryReason.LIMIT)

    def _on_latency(self, connection_id: str, rtt_ms: int) -> None:
        self._emit("latency", {"connection_id": connection_id, "latency_ms": rtt_ms})

    # --- Chat ---

    def send_text(self, text: str):
        """Broadcast a chat message to every guest."""
        text = clean_text(text)
        self.registry.broadcast(ControlMessage.make(MessageType.TEXT, TextPayload(text=text)))
        return self.chat.add(text, ChatSender.SELF)

    def nudge(self) -> int:
        """Nudge every connected guest; returns how many were reached."""
        return self.registry.broadcast(ControlMessage(type=MessageType.NUDGE))

    # --- View ---

    def snapshot(self) -> dict:
        expires_at = self.config.expires_at
        return {
            "code": self.code,
            "peer_id": self.peer_id,
            "running": self.running,
            "expired_reason": self.expired_reason.value if self.expired_reason else None,
            "expires_at": expires_at,
            "time_remaining": max(0.0, expires_at - time.time()) if expires_at else None,
            "max_downloads": self.config.max_downloads,
            "total_downloads": self.total_downloads,
            "total_bytes_sent": self.total_bytes_sent,
            "locked": self.gate.locked,
            "files": [f.model_dump(mode="json") for f in self._files.values()],
            "connections": [
                {
                    **conn.model_dump(),
                    "unlocked": self.gate.is_unlocked(conn.connection_id),
                    "latency_ms": self.liveness.latency_ms.get(conn.connection_id),
                }
                for conn in self.registry.connections()
            ],
            "transfers": [s.model_dump(mode="json") for s in self.sender.states()],
            "chat": [m.model_dump(mode="json") for m in self.chat.messages()],
        }

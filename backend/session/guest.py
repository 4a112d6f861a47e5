"""
Guest session: connects to one host by its short code and downloads.

Received files are written to the save directory before the next request
goes out, so at most one file's bytes are ever held in memory.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path

from config import DEFAULT_SAVE_DIR, PASSWORD_TIMEOUT, PING_INTERVAL
from connection.provider import ConnectionProvider
from connection.registry import (
    ConnectionRegistry,
    ConnectionStatus,
    InboundData,
    PeerConnection,
    StatusEvent,
)
from errors import AuthFailure, ConnectivityError, TransportClosed
from protocol.models import (
    ControlMessage,
    ErrorPayload,
    FileMeta,
    FileRequest,
    ManifestPayload,
    MessageType,
    PasswordAttempt,
    TextPayload,
)
from session.chat import ChatLog, clean_text
from session.events import EventEmitter
from session.host import peer_id_for
from session.liveness import LivenessProbe
from session.models import ChatSender, DownloadState, DownloadStatus
from transfer.models import CompletedFile, TransferState, TransferStatus
from transfer.receiver import ReceiverEngine
from transfer.scheduler import DownloadScheduler
from transfer.sink import save_completed

logger = logging.getLogger(__name__)


class GuestStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LOCKED = "locked"
    DISCONNECTED = "disconnected"


class GuestSession(EventEmitter):
    """The receiving side of a share."""

    def __init__(
        self,
        provider: ConnectionProvider,
        save_dir: str | Path = DEFAULT_SAVE_DIR,
        ping_interval: float = PING_INTERVAL,
    ) -> None:
        super().__init__()
        self.registry = ConnectionRegistry(provider)
        self.save_dir = Path(save_dir)
        self.receiver = ReceiverEngine(
            on_file=self._on_file,
            on_state=self._on_transfer_state,
            on_progress=self._on_transfer_progress,
            on_finished=self._on_transfer_finished,
        )
        self.scheduler = DownloadScheduler(self._send_request)
        self.liveness = LivenessProbe(
            self.registry, ping_interval, on_latency=self._on_latency
        )
        self.chat = ChatLog()

        self.status = GuestStatus.IDLE
        self.code: str | None = None
        self.connection_id: str | None = None
        self.files: list[FileMeta] = []
        self.downloads: dict[str, DownloadState] = {}
        self.saved: dict[str, CompletedFile] = {}
        self.locked = False
        self.verifying = False
        self.password_error = False
        self._save_tasks: set[asyncio.Task] = set()
        self._password_result: asyncio.Future | None = None

        # A guest only dials out; nobody else may open a link to it
        self.registry.accepting = False
        self.registry.on_connection(self._on_connection)
        self.registry.on_data(self._on_data)
        self.registry.on_status(self._on_status)
        self.registry.on_error(self._on_error)

    # --- Lifecycle ---

    @property
    def connected(self) -> bool:
        return self.connection_id is not None and self.registry.is_open(self.connection_id)

    def _set_status(self, status: GuestStatus) -> None:
        self.status = status
        self._emit("guest_status", {"status": status.value, "code": self.code})

    async def connect(self, code: str) -> None:
        """Look up the host behind `code` and open the link. Raises ConnectivityError."""
        self.code = code.strip()
        self._set_status(GuestStatus.CONNECTING)
        try:
            if self.registry.peer_id is None:
                await self.registry.start()
            await self.registry.connect(peer_id_for(self.code))
        except ConnectivityError:
            self._set_status(GuestStatus.DISCONNECTED)
            raise

    async def close(self) -> None:
        self.liveness.stop()
        await self.registry.destroy()
        if self._save_tasks:
            await asyncio.gather(*self._save_tasks, return_exceptions=True)

    # --- Registry events ---

    def _on_connection(self, conn: PeerConnection) -> None:
        if self.connected and conn.connection_id != self.connection_id:
            logger.warning(f"Ignoring extra connection {conn.connection_id} from {conn.peer_id}")
            return
        self.connection_id = conn.connection_id
        self.liveness.watch(conn.connection_id)
        # Still waiting for the manifest
        self._set_status(GuestStatus.CONNECTED)

    def _on_status(self, event: StatusEvent) -> None:
        if event.status != ConnectionStatus.DISCONNECTED or event.connection_id != self.connection_id:
            return
        self.receiver.fail_connection(event.connection_id)
        for file_id in self.scheduler.reset():
            self._mark_failed(file_id, "Connection closed")
        self.liveness.unwatch(event.connection_id)
        self._resolve_password(TransportClosed("Connection closed"))
        self._set_status(GuestStatus.DISCONNECTED)

    def _on_error(self, error: Exception) -> None:
        logger.warning(f"Connection error: {error}")
        self._notify("error", str(error))

    def _on_data(self, event: InboundData) -> None:
        cid = event.connection_id
        if cid != self.connection_id:
            return
        if self.receiver.handle(cid, event.data):
            return
        message = event.data
        if self.liveness.handle(cid, message):
            return

        try:
            if message.type == MessageType.MANIFEST:
                self._on_manifest(message.parse_payload(ManifestPayload))
            elif message.type == MessageType.PASSWORD_CORRECT:
                self.locked = False
                self.verifying = False
                self.password_error = False
                self._resolve_password(None)
                self._emit("password_result", {"correct": True})
            elif message.type == MessageType.PASSWORD_INCORRECT:
                self.verifying = False
                self.password_error = True
                self._resolve_password(AuthFailure("Incorrect password"))
                self._emit("password_result", {"correct": False})
            elif message.type == MessageType.TEXT:
                text = message.parse_payload(TextPayload).text
                chat = self.chat.add(text, ChatSender.PEER, connection_id=cid)
                self._emit("chat_message", chat.model_dump(mode="json"))
            elif message.type == MessageType.NUDGE:
                self._emit("nudge", {"connection_id": cid})
            elif message.type == MessageType.ERROR:
                self._on_host_error(message.parse_payload(ErrorPayload))
            else:
                logger.debug(f"Ignoring {message.type.value} from host")
        except ValueError as e:
            logger.warning(f"Malformed {message.type.value} from host: {e}")

    def _on_manifest(self, manifest: ManifestPayload) -> None:
        if manifest.locked:
            self.locked = True
            self._set_status(GuestStatus.LOCKED)
            return
        self.locked = False
        self.files = list(manifest.files)
        for meta in self.files:
            self.downloads.setdefault(meta.id, DownloadState())
        self._emit("manifest", {"files": [f.to_wire() for f in self.files]})
        self._set_status(GuestStatus.CONNECTED)

    def _on_host_error(self, error: ErrorPayload) -> None:
        logger.warning(f"Host refused: {error.message} ({error.code})")
        self._notify("error", error.message)
        if error.file_id is None:
            return
        current = self.receiver.current(self.connection_id)
        if current is not None and current.file_id == error.file_id:
            # Releases the scheduler slot through _on_transfer_finished
            self.receiver.abort(self.connection_id, error.message)
        self._mark_failed(error.file_id, error.message)
        if self.scheduler.in_flight == error.file_id:
            self.scheduler.on_transfer_finished(error.file_id, succeeded=False)

    # --- Transfer callbacks ---

    def _mark_failed(self, file_id: str, reason: str) -> None:
        download = self.downloads.setdefault(file_id, DownloadState())
        download.status = DownloadStatus.FAILED
        download.error_message = reason
        download.speed_bps = 0.0
        download.eta_seconds = 0.0
        self._emit("download_state", {"file_id": file_id, **download.model_dump(mode="json")})

    def _on_transfer_state(self, state: TransferState) -> None:
        download = self.downloads.get(state.file_id)
        if download is None:
            return
        if state.active:
            download.status = DownloadStatus.DOWNLOADING
            download.error_message = None
        elif state.status == TransferStatus.FAILED:
            download.status = DownloadStatus.FAILED
            download.error_message = state.error_message
        download.progress_percent = state.progress_percent
        download.speed_bps = state.speed_bps
        download.eta_seconds = state.eta_seconds
        self._emit("transfer_state", state.model_dump(mode="json"))

    def _on_transfer_progress(self, state: TransferState) -> None:
        download = self.downloads.get(state.file_id)
        if download is None:
            return
        download.progress_percent = state.progress_percent
        download.speed_bps = state.speed_bps
        download.eta_seconds = state.eta_seconds
        self._emit("transfer_progress", state.model_dump(mode="json"))

    def _on_file(self, completed: CompletedFile) -> None:
        if completed.meta.id != self.scheduler.in_flight:
            logger.warning(f"Protocol violation: unrequested file {completed.meta.id} discarded")
            return
        task = asyncio.create_task(self._save(completed))
        self._save_tasks.add(task)
        task.add_done_callback(self._save_tasks.discard)

    async def _save(self, completed: CompletedFile) -> None:
        file_id = completed.meta.id
        download = self.downloads.setdefault(file_id, DownloadState())
        ok = False
        try:
            path = await save_completed(completed, self.save_dir)
        except OSError as e:
            logger.error(f"Could not save {completed.meta.name}: {e}")
            self._mark_failed(file_id, str(e))
        else:
            ok = True
            self.saved[file_id] = completed
            download.status = DownloadStatus.COMPLETED
            download.progress_percent = 100.0
            download.speed_bps = 0.0
            download.eta_seconds = 0.0
            download.saved_path = str(path)
            self._notify("success", f"'{completed.meta.name}' received successfully!")
            self._emit("download_state", {"file_id": file_id, **download.model_dump(mode="json")})
        finally:
            # Only now may the next file be requested
            self.scheduler.on_transfer_finished(file_id, succeeded=ok)

    def _on_transfer_finished(self, connection_id: str, state: TransferState) -> None:
        # Successful files release the slot once saved, in _save
        if state.status == TransferStatus.FAILED:
            self.scheduler.on_transfer_finished(state.file_id, succeeded=False)

    def _on_latency(self, connection_id: str, rtt_ms: int) -> None:
        self._emit("latency", {"connection_id": connection_id, "latency_ms": rtt_ms})

    # --- Commands ---

    def _require_connection(self) -> str:
        if not self.connected:
            raise TransportClosed("Not connected to a host")
        return self.connection_id

    def _send_request(self, file_id: str) -> bool:
        if self.connection_id is None:
            return False
        return self.registry.send_to(
            self.connection_id,
            ControlMessage.make(MessageType.REQUEST_FILE, FileRequest(file_id=file_id)),
        )

    def verify_password(self, password: str) -> None:
        cid = self._require_connection()
        self.verifying = True
        self.password_error = False
        self.registry.send_to(
            cid,
            ControlMessage.make(MessageType.VERIFY_PASSWORD, PasswordAttempt(password=password)),
        )

    def _resolve_password(self, error: Exception | None) -> None:
        future, self._password_result = self._password_result, None
        if future is None or future.done():
            return
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(error)

    async def unlock(self, password: str, timeout: float = PASSWORD_TIMEOUT) -> None:
        """
        Send an unlock attempt and wait for the host's verdict.

        Raises AuthFailure on a wrong password and TransportClosed if the
        link drops first. The connection stays open after a failure.
        """
        future = asyncio.get_running_loop().create_future()
        self._password_result = future
        try:
            self.verify_password(password)
            await asyncio.wait_for(future, timeout)
        finally:
            if self._password_result is future:
                self._password_result = None

    def _mark_pending(self, file_id: str) -> None:
        # START_FILE from the host moves it on to DOWNLOADING
        download = self.downloads.setdefault(file_id, DownloadState())
        download.status = DownloadStatus.PENDING
        download.error_message = None
        self._emit("download_state", {"file_id": file_id, **download.model_dump(mode="json")})

    def download(self, file_id: str) -> bool:
        """Queue one file. Returns False if it is already queued, running or done."""
        self._require_connection()
        if file_id not in {f.id for f in self.files}:
            raise KeyError(file_id)
        download = self.downloads.setdefault(file_id, DownloadState())
        if download.status == DownloadStatus.DOWNLOADING:
            return False
        if not self.scheduler.request(file_id):
            return False
        self._mark_pending(file_id)
        return True

    def download_all(self) -> list[str]:
        """Queue every file that is not done or running yet."""
        self._require_connection()
        wanted = [
            meta.id
            for meta in self.files
            if self.downloads.get(meta.id, DownloadState()).status
            not in (DownloadStatus.COMPLETED, DownloadStatus.DOWNLOADING)
        ]
        queued = self.scheduler.request_all(wanted)
        for file_id in queued:
            self._mark_pending(file_id)
        return queued

    def send_text(self, text: str):
        cid = self._require_connection()
        text = clean_text(text)
        self.registry.send_to(cid, ControlMessage.make(MessageType.TEXT, TextPayload(text=text)))
        return self.chat.add(text, ChatSender.SELF, connection_id=cid)

    def send_nudge(self) -> bool:
        cid = self._require_connection()
        return self.registry.send_to(cid, ControlMessage(type=MessageType.NUDGE))

    # --- View ---

    def snapshot(self) -> dict:
        return {
            "code": self.code,
            "status": self.status.value,
            "connection_id": self.connection_id,
            "locked": self.locked,
            "verifying": self.verifying,
            "password_error": self.password_error,
            "latency_ms": self.liveness.latency_ms.get(self.connection_id) if self.connection_id else None,
            "files": [f.to_wire() for f in self.files],
            "downloads": {fid: d.model_dump(mode="json") for fid, d in self.downloads.items()},
            "queue": self.scheduler.queued,
            "in_flight": self.scheduler.in_flight,
            "chat": [m.model_dump(mode="json") for m in self.chat.messages()],
        }

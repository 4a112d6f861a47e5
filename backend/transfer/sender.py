"""
Sender Transfer Engine.

Streams one hosted file to one connection as START_FILE, a run of binary
chunks and END_FILE, pausing whenever the link's backlog is too deep.
At most one transfer per connection is active at a time.
"""

import asyncio
import logging
from typing import Callable

from config import CHUNK_SIZE, TRANSFER_RETENTION
from connection.registry import ConnectionRegistry
from errors import TransportClosed
from protocol.models import ControlMessage, ErrorPayload, FileEnd, MessageType
from session.models import HostedFile
from transfer.models import TransferDirection, TransferState, TransferStatus
from transfer.progress import ProgressSampler

logger = logging.getLogger(__name__)

StateCallback = Callable[[TransferState], None]


class SenderEngine:
    """Per-connection, per-file send state machines for the host."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        chunk_size: int = CHUNK_SIZE,
        on_state: StateCallback | None = None,
        on_progress: StateCallback | None = None,
        on_complete: StateCallback | None = None,
        retention: float = TRANSFER_RETENTION,
    ) -> None:
        self._registry = registry
        self.chunk_size = chunk_size
        self._on_state = on_state
        self._on_progress = on_progress
        self._on_complete = on_complete
        self._retention = retention
        self._states: dict[tuple[str, str], TransferState] = {}
        self._tasks: dict[tuple[str, str], asyncio.Task] = {}

    def states(self) -> list[TransferState]:
        return list(self._states.values())

    def get(self, connection_id: str, file_id: str) -> TransferState | None:
        return self._states.get((connection_id, file_id))

    def is_busy(self, connection_id: str) -> bool:
        """True while any transfer on this connection is starting/transferring."""
        return any(
            s.active for (cid, _), s in self._states.items() if cid == connection_id
        )

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._states.values() if s.active)

    def start(self, connection_id: str, hosted: HostedFile) -> asyncio.Task | None:
        """Begin sending `hosted`; ignored while this connection is busy."""
        if self.is_busy(connection_id):
            logger.warning(
                f"Ignoring request for {hosted.meta.id} on {connection_id}: "
                f"a transfer is already in flight"
            )
            return None

        key = (connection_id, hosted.meta.id)
        state = TransferState(
            connection_id=connection_id,
            file_id=hosted.meta.id,
            file_name=hosted.meta.name,
            direction=TransferDirection.SENDING,
            expected_size=hosted.meta.size,
        )
        self._states[key] = state
        task = asyncio.create_task(self._run(state, hosted))
        self._tasks[key] = task
        task.add_done_callback(lambda _: self._tasks.pop(key, None))
        return task

    async def _run(self, state: TransferState, hosted: HostedFile) -> None:
        cid = state.connection_id
        meta = hosted.meta
        sampler = ProgressSampler()
        logger.info(f"Sending {meta.name} ({meta.size} bytes) to {cid}")

        try:
            self._send(cid, ControlMessage.make(MessageType.START_FILE, meta))
            self._changed(state)

            offset = 0
            with open(hosted.path, "rb") as f:
                while offset < meta.size:
                    await self._registry.wait_for_capacity(cid)
                    if not state.active:
                        raise TransportClosed(f"Transfer to {cid} was stopped")

                    want = min(self.chunk_size, meta.size - offset)
                    chunk = await asyncio.to_thread(f.read, want)
                    if not chunk:
                        raise OSError(f"{hosted.path} is shorter than {meta.size} bytes")
                    self._send(cid, chunk)

                    offset += len(chunk)
                    state.bytes_transferred = offset
                    if state.status == TransferStatus.STARTING:
                        state.status = TransferStatus.TRANSFERRING
                        self._changed(state)
                    if sampler.record(state, len(chunk)) and self._on_progress:
                        self._on_progress(state)

            # Let the backlog drain before announcing the end
            await self._registry.wait_for_capacity(cid)
            self._send(cid, ControlMessage.make(MessageType.END_FILE, FileEnd(file_id=meta.id)))

            state.complete()
            logger.info(f"Sent {meta.name} to {cid}")
            self._changed(state)
            if self._on_complete:
                self._on_complete(state)

        except TransportClosed as e:
            logger.warning(f"Send of {meta.name} to {cid} failed: {e}")
            self._fail(state, "Connection closed")
        except OSError as e:
            logger.error(f"Send error for {meta.name}: {e}")
            # The peer is still there; tell it this file will not arrive
            self._registry.send_to(
                cid,
                ControlMessage.make(
                    MessageType.ERROR,
                    ErrorPayload(message="File unavailable", code="io_error", file_id=meta.id),
                ),
            )
            self._fail(state, str(e))
        except asyncio.CancelledError:
            self._fail(state, "Cancelled")
            raise
        finally:
            self._schedule_forget(state)

    def _send(self, connection_id: str, payload) -> None:
        if not self._registry.send_to(connection_id, payload):
            raise TransportClosed(f"Connection {connection_id} is not open")

    def _fail(self, state: TransferState, reason: str) -> None:
        if not state.active:
            return
        state.fail(reason)
        self._changed(state)

    def _changed(self, state: TransferState) -> None:
        if self._on_state:
            self._on_state(state)

    def _schedule_forget(self, state: TransferState) -> None:
        key = (state.connection_id, state.file_id)

        def forget() -> None:
            if self._states.get(key) is state:
                del self._states[key]

        asyncio.get_running_loop().call_later(self._retention, forget)

    def fail_connection(self, connection_id: str) -> None:
        """Mark every active transfer on a dropped connection as failed."""
        for (cid, _), state in list(self._states.items()):
            if cid == connection_id:
                self._fail(state, "Connection closed")

    async def stop(self) -> None:
        """Cancel every running transfer task."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

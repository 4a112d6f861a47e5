"""
Receiver Transfer Engine.

Reassembles the START_FILE / chunks / END_FILE sequence of each
connection. Everything here is synchronous: a chunk is appended in the
same callback that delivered it, so arrival order is reassembly order.
Only one file per connection is held in memory at a time.
"""

import logging
from typing import Callable

from protocol.codec import Payload
from protocol.models import ControlMessage, FileEnd, FileMeta, MessageType
from transfer.models import (
    CompletedFile,
    TransferDirection,
    TransferState,
    TransferStatus,
)
from transfer.progress import ProgressSampler

logger = logging.getLogger(__name__)


class _Assembly:
    """Chunks of the file currently arriving on one connection."""

    def __init__(self, meta: FileMeta, state: TransferState) -> None:
        self.meta = meta
        self.state = state
        self.chunks: list[bytes] = []
        self.sampler = ProgressSampler()


class ReceiverEngine:
    """Consumes decoded inbound units and produces CompletedFiles."""

    def __init__(
        self,
        on_file: Callable[[CompletedFile], None],
        on_state: Callable[[TransferState], None] | None = None,
        on_progress: Callable[[TransferState], None] | None = None,
        on_finished: Callable[[str, TransferState], None] | None = None,
    ) -> None:
        self._on_file = on_file
        self._on_state = on_state
        self._on_progress = on_progress
        self._on_finished = on_finished
        self._assemblies: dict[str, _Assembly] = {}
        self._last: dict[str, TransferState] = {}

    def current(self, connection_id: str) -> TransferState | None:
        """The active transfer on a connection, if any."""
        assembly = self._assemblies.get(connection_id)
        return assembly.state if assembly else None

    def last(self, connection_id: str) -> TransferState | None:
        """The most recent transfer on a connection, finished or not."""
        return self._last.get(connection_id)

    def buffered_bytes(self, connection_id: str) -> int:
        assembly = self._assemblies.get(connection_id)
        return sum(len(c) for c in assembly.chunks) if assembly else 0

    def handle(self, connection_id: str, payload: Payload) -> bool:
        """
        Process one unit. Returns True if it belonged to a file transfer
        (a chunk, START_FILE or END_FILE), False for anything else.
        """
        if isinstance(payload, bytes):
            self._on_chunk(connection_id, payload)
            return True
        if payload.type == MessageType.START_FILE:
            self._on_start(connection_id, payload)
            return True
        if payload.type == MessageType.END_FILE:
            self._on_end(connection_id, payload)
            return True
        return False

    def _on_start(self, connection_id: str, message: ControlMessage) -> None:
        try:
            meta = message.parse_payload(FileMeta)
        except ValueError as e:
            logger.warning(f"Bad START_FILE from {connection_id}: {e}")
            return

        previous = self._assemblies.pop(connection_id, None)
        if previous is not None:
            # Never merge two files: the unfinished one is thrown away
            logger.warning(
                f"Protocol violation: START_FILE for {meta.id} while "
                f"{previous.meta.id} is unfinished on {connection_id}"
            )
            self._fail(previous, "Interrupted by a new file")

        state = TransferState(
            connection_id=connection_id,
            file_id=meta.id,
            file_name=meta.name,
            direction=TransferDirection.RECEIVING,
            expected_size=meta.size,
        )
        self._assemblies[connection_id] = _Assembly(meta, state)
        self._last[connection_id] = state
        logger.info(f"Receiving {meta.name} ({meta.size} bytes) on {connection_id}")
        self._changed(state)

        if meta.size == 0:
            self._finalize(connection_id)

    def _on_chunk(self, connection_id: str, chunk: bytes) -> None:
        assembly = self._assemblies.get(connection_id)
        if assembly is None:
            logger.warning(
                f"Protocol violation: {len(chunk)}-byte chunk with no "
                f"active transfer on {connection_id}; dropped"
            )
            return

        state = assembly.state
        assembly.chunks.append(chunk)
        state.bytes_transferred += len(chunk)
        if state.status == TransferStatus.STARTING:
            state.status = TransferStatus.TRANSFERRING
            self._changed(state)
        if assembly.sampler.record(state, len(chunk)) and self._on_progress:
            self._on_progress(state)

        if state.bytes_transferred >= state.expected_size:
            self._finalize(connection_id)

    def _on_end(self, connection_id: str, message: ControlMessage) -> None:
        try:
            end = message.parse_payload(FileEnd)
        except ValueError as e:
            logger.warning(f"Bad END_FILE from {connection_id}: {e}")
            return
        assembly = self._assemblies.get(connection_id)
        # Already finalized by size, or about some other file: nothing to do
        if assembly is None or assembly.meta.id != end.file_id:
            return
        self._finalize(connection_id)

    def _finalize(self, connection_id: str) -> None:
        assembly = self._assemblies.pop(connection_id)
        state = assembly.state
        data = b"".join(assembly.chunks)
        assembly.chunks.clear()

        if len(data) < assembly.meta.size:
            logger.warning(
                f"{assembly.meta.name} ended short: {len(data)} of {assembly.meta.size} bytes"
            )
            self._fail(assembly, "Transfer ended before all data arrived")
            return

        state.complete()
        logger.info(f"Received {assembly.meta.name} on {connection_id}")
        try:
            self._on_file(CompletedFile(meta=assembly.meta, data=data))
        except Exception as e:
            logger.error(f"Could not store {assembly.meta.name}: {e}")
            state.fail(str(e))
        self._changed(state)
        if self._on_finished:
            self._on_finished(connection_id, state)

    def _fail(self, assembly: _Assembly, reason: str) -> None:
        assembly.chunks.clear()
        assembly.state.fail(reason)
        self._changed(assembly.state)
        if self._on_finished:
            self._on_finished(assembly.state.connection_id, assembly.state)

    def abort(self, connection_id: str, reason: str) -> TransferState | None:
        """Discard the partial file on a connection, if any."""
        assembly = self._assemblies.pop(connection_id, None)
        if assembly is None:
            return None
        logger.warning(f"Aborting {assembly.meta.name} on {connection_id}: {reason}")
        self._fail(assembly, reason)
        return assembly.state

    def fail_connection(self, connection_id: str) -> None:
        """The connection dropped: discard its partial file."""
        self.abort(connection_id, "Connection closed")

    def _changed(self, state: TransferState) -> None:
        if self._on_state:
            self._on_state(state)

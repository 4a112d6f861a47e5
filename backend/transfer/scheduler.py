"""
Download Scheduler (guest side).

A FIFO of requested file ids. Only one REQUEST_FILE is outstanding at a
time, which matches the host's one-transfer-per-connection rule.
"""

import logging
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class DownloadScheduler:
    """Serializes file requests over one connection."""

    def __init__(self, send_request: Callable[[str], bool]) -> None:
        # send_request(file_id) -> whether the request went out
        self._send_request = send_request
        self._queue: deque[str] = deque()
        self._in_flight: str | None = None
        self._completed: set[str] = set()

    @property
    def in_flight(self) -> str | None:
        return self._in_flight

    @property
    def queued(self) -> list[str]:
        return list(self._queue)

    def request(self, file_id: str) -> bool:
        """Queue a file unless it is queued, in flight or already done."""
        if (
            file_id in self._queue
            or file_id == self._in_flight
            or file_id in self._completed
        ):
            return False
        self._queue.append(file_id)
        self.drain()
        return True

    def request_all(self, file_ids: list[str]) -> list[str]:
        """Queue several files in order; returns the ones actually added."""
        return [fid for fid in file_ids if self.request(fid)]

    def drain(self) -> None:
        """Issue the head of the queue if nothing is in flight."""
        if self._in_flight is not None or not self._queue:
            return
        file_id = self._queue.popleft()
        self._in_flight = file_id
        if not self._send_request(file_id):
            logger.warning(f"Could not request {file_id}; connection not open")
            self._in_flight = None
            self._queue.appendleft(file_id)
            return
        logger.debug(f"Requested {file_id}")

    def on_transfer_finished(self, file_id: str, succeeded: bool) -> None:
        """The in-flight transfer ended; move on to the next one."""
        if file_id != self._in_flight:
            logger.warning(f"Ignoring finished transfer {file_id}; {self._in_flight} is in flight")
            return
        if succeeded:
            self._completed.add(file_id)
        self._in_flight = None
        self.drain()

    def reset(self) -> list[str]:
        """Forget everything pending; returns the ids that never finished."""
        pending = list(self._queue)
        if self._in_flight is not None:
            pending.insert(0, self._in_flight)
        self._queue.clear()
        self._in_flight = None
        return pending

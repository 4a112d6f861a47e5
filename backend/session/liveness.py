"""Round-trip latency probe over the control channel."""

import asyncio
import logging
import time
from typing import Callable

from config import PING_INTERVAL
from connection.registry import ConnectionRegistry
from protocol.models import ControlMessage, MessageType, PingPayload

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class LivenessProbe:
    """Sends PING every interval per watched connection and records RTTs."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        interval: float = PING_INTERVAL,
        on_latency: Callable[[str, int], None] | None = None,
    ) -> None:
        self._registry = registry
        self._interval = interval
        self._on_latency = on_latency
        self._tasks: dict[str, asyncio.Task] = {}
        self.latency_ms: dict[str, int] = {}

    def ping(self, connection_id: str) -> bool:
        return self._registry.send_to(
            connection_id,
            ControlMessage.make(MessageType.PING, PingPayload(ts=now_ms())),
        )

    def handle_ping(self, connection_id: str, message: ControlMessage) -> None:
        # Echo the payload untouched; the sender does the arithmetic
        self._registry.send_to(
            connection_id, ControlMessage(type=MessageType.PONG, payload=message.payload)
        )

    def handle_pong(self, connection_id: str, message: ControlMessage) -> int | None:
        try:
            pong = message.parse_payload(PingPayload)
        except ValueError:
            logger.debug(f"Malformed PONG from {connection_id}")
            return None
        rtt = max(0, now_ms() - pong.ts)
        self.latency_ms[connection_id] = rtt
        if self._on_latency:
            self._on_latency(connection_id, rtt)
        return rtt

    def handle(self, connection_id: str, message: ControlMessage) -> bool:
        """Answer PING and record PONG. Returns True if the message was ours."""
        if message.type == MessageType.PING:
            self.handle_ping(connection_id, message)
            return True
        if message.type == MessageType.PONG:
            self.handle_pong(connection_id, message)
            return True
        return False

    def watch(self, connection_id: str) -> None:
        if connection_id not in self._tasks:
            self._tasks[connection_id] = asyncio.create_task(self._loop(connection_id))

    def unwatch(self, connection_id: str) -> None:
        task = self._tasks.pop(connection_id, None)
        if task:
            task.cancel()
        self.latency_ms.pop(connection_id, None)

    async def _loop(self, connection_id: str) -> None:
        try:
            while self._registry.is_open(connection_id):
                await asyncio.sleep(self._interval)
                if self._registry.is_open(connection_id):
                    self.ping(connection_id)
        finally:
            if self._tasks.get(connection_id) is asyncio.current_task():
                del self._tasks[connection_id]

    def stop(self) -> None:
        for cid in list(self._tasks):
            self.unwatch(cid)

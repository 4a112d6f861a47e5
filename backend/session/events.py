"""Event fan-out from the sessions to the view layer."""

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

# fn(event_type, data); may be sync or async
EventCallback = Callable[[str, dict], Any]


class EventEmitter:
    """Delivers events to registered callbacks without ever blocking the caller."""

    def __init__(self) -> None:
        self._event_callbacks: list[EventCallback] = []
        self._pending: set[asyncio.Task] = set()

    def on_event(self, callback: EventCallback) -> None:
        """Register callback: fn(event_type: str, data: dict), sync or async."""
        self._event_callbacks.append(callback)

    def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                result = cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._settle)

    def _settle(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Event callback error: {task.exception()}")

    def _notify(self, kind: str, message: str) -> None:
        """User-facing toast: kind is success | error | info | warning."""
        self._emit("notification", {"type": kind, "message": message})

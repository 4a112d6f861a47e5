"""Speed tracking and rate-limited progress sampling."""

import time
from collections import deque

from config import PROGRESS_INTERVAL
from transfer.models import TransferState


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0):
        self._window = window
        self._samples: deque[tuple[float, int]] = deque()
        self._total = 0

    def record(self, byte_count: int, now: float | None = None) -> None:
        now = time.monotonic() if now is None else now
        self._samples.append((now, byte_count))
        self._total += byte_count
        # Trim old samples
        cutoff = now - self._window
        while self._samples[0][0] < cutoff:
            _, dropped = self._samples.popleft()
            self._total -= dropped

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        # The first sample only marks the start of the window
        total_bytes = self._total - self._samples[0][1]
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed


class ProgressSampler:
    """
    Recomputes percentage, speed and ETA at most once per interval.

    record() is called for every chunk; it only touches the TransferState's
    advisory fields when the interval has elapsed, and reports whether it did.
    """

    def __init__(self, interval: float = PROGRESS_INTERVAL) -> None:
        self._interval = interval
        self._tracker = SpeedTracker()
        self._last_sample = time.monotonic()
        self.samples_taken = 0

    def record(self, state: TransferState, byte_count: int) -> bool:
        now = time.monotonic()
        self._tracker.record(byte_count, now)
        if now - self._last_sample < self._interval:
            return False
        self._last_sample = now
        self.samples_taken += 1

        state.speed_bps = self._tracker.get_speed()
        state.progress_percent = (
            min(100.0, state.bytes_transferred / state.expected_size * 100)
            if state.expected_size > 0
            else 100.0
        )
        remaining = max(0, state.expected_size - state.bytes_transferred)
        state.eta_seconds = (
            remaining / state.speed_bps if state.speed_bps > 0 else 0.0
        )
        return True

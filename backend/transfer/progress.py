"""Progress and throughput accounting shared by both transfer roles."""

import time

from config import PROGRESS_INTERVAL


class ProgressTracker:
    """
    Cumulative byte count plus a sampled throughput figure.

    Throughput is recomputed at most once per ``interval`` from the bytes
    moved since the previous sample, so there is never a zero-length
    interval to divide by.
    """

    def __init__(self, total: int, interval: float = PROGRESS_INTERVAL, clock=time.monotonic):
        self.total = total
        self.interval = interval
        self._clock = clock
        self.transferred = 0
        self.speed_bps = 0.0
        self.finished = False
        self._sample_time = clock()
        self._sample_bytes = 0

    def add(self, byte_count: int) -> bool:
        """Account for ``byte_count`` more bytes. Returns True when a new sample was taken."""
        self.transferred += byte_count
        now = self._clock()
        elapsed = now - self._sample_time
        if elapsed <= 0 or elapsed < self.interval:
            return False
        self._sample(now, elapsed)
        return True

    def finish(self) -> None:
        """Mark the transfer done, sampling whatever moved since the last sample."""
        self.finished = True
        now = self._clock()
        elapsed = now - self._sample_time
        if elapsed > 0 and self.transferred > self._sample_bytes:
            self._sample(now, elapsed)

    def _sample(self, now: float, elapsed: float) -> None:
        self.speed_bps = (self.transferred - self._sample_bytes) / elapsed
        self._sample_time = now
        self._sample_bytes = self.transferred

    @property
    def percent(self) -> float:
        """100 only once every entry is done, whatever the ratio rounds to."""
        if self.finished:
            return 100.0
        if self.total <= 0:
            return 0.0
        return min(self.transferred / self.total * 100, 99.99)

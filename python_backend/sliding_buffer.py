"""
Sliding Buffer — fixed-capacity FIFO of raw samples
=====================================================
Holds the latest `capacity` raw rows and their integer timetags. New rows are
written at the tail after shifting the stored rows left, in place; the arrays
are allocated once and never resized.
"""

import logging

import numpy as np

from errors import CapacityExceeded, DimensionMismatch

log = logging.getLogger(__name__)


class SlidingBuffer:
    def __init__(self, capacity: int, width: int):
        if capacity < 1 or width < 1:
            raise ValueError(f"Invalid buffer geometry {capacity}x{width}")
        self.capacity = capacity
        self.width = width
        self.rows = np.zeros((capacity, width), dtype=np.float64)
        self.timetags = np.zeros(capacity, dtype=np.int64)
        self.total_appended = 0
        log.debug(f"Created raw buffer of size {capacity}x{width}")

    @property
    def is_full(self) -> bool:
        return self.total_appended >= self.capacity

    def append(self, timetag: int, row) -> None:
        self.append_batch([timetag], [row])

    def append_batch(self, timetags, rows) -> None:
        """
        Shift the stored rows left by len(rows) and write the new rows at the tail.

        Validation happens before any write, so a rejected batch leaves the
        buffer untouched.
        """
        rows = np.asarray(rows, dtype=np.float64)
        timetags = np.asarray(timetags, dtype=np.int64)
        if rows.ndim == 1:
            rows = rows.reshape(1, -1)
        n = rows.shape[0]

        if n > self.capacity:
            raise CapacityExceeded(n, self.capacity)
        if rows.shape[1] != self.width:
            raise DimensionMismatch("raw row width", self.width, rows.shape[1])
        if timetags.shape[0] != n:
            raise DimensionMismatch("timetag count", n, timetags.shape[0])
        if n == 0:
            return

        if n < self.capacity:
            self.rows[:-n] = self.rows[n:]
            self.timetags[:-n] = self.timetags[n:]
        self.rows[-n:] = rows
        self.timetags[-n:] = timetags
        self.total_appended += n

    def snapshot(self):
        """Copies of (timetags, rows) for consumers that must not alias the buffer."""
        return self.timetags.copy(), self.rows.copy()

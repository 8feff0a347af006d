"""
pixelbatch/convert/pool.py — Bounded free-list of float32 image buffers.

Every conversion writes into a buffer checked out from here and the pipeline
hands it back once the record is flushed, so a steady-state run allocates
nothing per image.
"""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)


class BufferPool:
    """
    Recycles ``float32`` arrays of a single size class.

    A buffer is either checked out (owned by one in-flight conversion or an
    unflushed record) or sitting zero-filled in the free list, never both.
    The free list holds at most ``capacity`` buffers; releases beyond that
    are dropped and left to the allocator.

    Args:
        size: Number of floats per buffer (``width * height * channels``).
        capacity: Free-list bound (``batch_size + pool_slack``).
    """

    def __init__(self, size: int, capacity: int) -> None:
        self._size = int(size)
        self._capacity = max(0, int(capacity))
        self._free: list[np.ndarray] = []
        self._free_ids: set[int] = set()

        self.allocated: int = 0
        self.reused: int = 0
        self.dropped: int = 0

    @property
    def size(self) -> int:
        """Floats per buffer."""
        return self._size

    @property
    def capacity(self) -> int:
        """Maximum number of idle buffers retained."""
        return self._capacity

    @property
    def free_count(self) -> int:
        """Number of idle buffers currently held."""
        return len(self._free)

    def acquire(self) -> np.ndarray:
        """
        Return a buffer of the pool's size class.

        Pops an idle buffer when one is available, otherwise allocates.
        """
        if self._free:
            buf = self._free.pop()
            self._free_ids.discard(id(buf))
            self.reused += 1
            return buf
        self.allocated += 1
        return np.zeros(self._size, dtype=np.float32)

    def release(self, buf: np.ndarray) -> None:
        """
        Zero-fill *buf* and return it to the free list if there is room.

        Buffers of another shape or dtype, and buffers already idle in the
        pool, are ignored.
        """
        if buf.dtype != np.float32 or buf.shape != (self._size,):
            logger.debug("Ignoring foreign buffer shape=%s dtype=%s", buf.shape, buf.dtype)
            return
        if id(buf) in self._free_ids:
            return
        if len(self._free) >= self._capacity:
            self.dropped += 1
            return
        buf.fill(0.0)
        self._free.append(buf)
        self._free_ids.add(id(buf))

    def trim(self) -> int:
        """Drop every idle buffer. Returns how many were released."""
        count = len(self._free)
        self._free.clear()
        self._free_ids.clear()
        return count

    def stats(self) -> dict[str, int]:
        """Counters for progress reports and the run summary."""
        return {
            "free": len(self._free),
            "capacity": self._capacity,
            "allocated": self.allocated,
            "reused": self.reused,
            "dropped": self.dropped,
        }

"""
Volatile queue: in-memory FIFO of pending entries plus one in-flight batch.

The capacity is an entry count. With evict_on_overflow (persist="never")
push() drops the oldest pending entry once the queue is full; otherwise the
queue only trims itself when a batch fails, dropping the oldest failed
entries first.
"""

import logging
from typing import List, Tuple

from logrelay.types import Batch, Entry

logger = logging.getLogger(__name__)


class VolatileQueue:
    """Bounded in-memory queue with a single outstanding batch."""

    def __init__(self, capacity: int, *, evict_on_overflow: bool = False) -> None:
        self.capacity = max(1, capacity)
        self.evict_on_overflow = evict_on_overflow
        self._queue: List[Entry] = []
        self._sent: Batch = []

    @property
    def pending(self) -> Tuple[Entry, ...]:
        """Snapshot of pending entries, oldest first."""
        return tuple(self._queue)

    @property
    def in_flight(self) -> Tuple[Entry, ...]:
        """Snapshot of the outstanding batch."""
        return tuple(self._sent)

    def size(self) -> int:
        return len(self._queue)

    def in_flight_size(self) -> int:
        return len(self._sent)

    def __len__(self) -> int:
        return len(self._queue)

    def push(self, entry: Entry) -> None:
        self._queue.append(entry)
        if self.evict_on_overflow and len(self._queue) > self.capacity:
            self._queue.pop(0)

    def form_batch(self) -> Batch:
        """Move all pending entries into the outstanding batch, unless one exists."""
        if not self._sent:
            self._sent = self._queue
            self._queue = []
        return list(self._sent)

    def confirm(self) -> None:
        self._sent = []

    def fail(self) -> None:
        """Requeue the outstanding batch, dropping its oldest entries when over capacity."""
        overflow = 1 + len(self._queue) + len(self._sent) - self.capacity
        if overflow > 0:
            logger.debug("VolatileQueue: dropping %d failed entries", min(overflow, len(self._sent)))
            del self._sent[:overflow]
        self._queue = self._sent + self._queue
        self._sent = []

    def drain(self) -> Batch:
        """Remove and return everything held: the outstanding batch first, then pending."""
        entries = self._sent + self._queue
        self._sent = []
        self._queue = []
        return entries

"""
Durable queue: FIFO of pending entries persisted through a DurableKV.

Persisted layout (two keys):
  <prefix>-queue  JSON array of pending entries
  <prefix>-sent   JSON array of the batch awaiting confirmation

On construction a leftover <prefix>-sent batch is assumed undelivered (the
previous process died before confirming it) and is moved ahead of the
persisted pending entries.

The capacity is a serialized-size budget: capacity * PERSIST_BYTES_PER_ENTRY
characters of JSON. Whenever the pending array does not fit the budget, or
the backend raises StorageQuotaExceeded, the oldest entries are evicted
until it fits.
Every mutating operation ends with persist(), so the stored state never lags
memory by more than the operation in progress.
"""

import json
import logging
from typing import List, Optional, Sequence, Tuple

from logrelay.storage_backend import DurableKV
from logrelay.types import (
    DEFAULT_KEY_PREFIX,
    PERSIST_BYTES_PER_ENTRY,
    Batch,
    Entry,
    StorageQuotaExceeded,
)

logger = logging.getLogger(__name__)


class DurableQueue:
    """
    Queue whose pending and in-flight entries survive process restarts.

    If the backend is missing or fails the availability probe, the queue is
    created empty with available == False and callers must not use it.
    Backend errors after a successful probe are logged and otherwise ignored.
    """

    def __init__(
        self,
        kv: Optional[DurableKV],
        capacity: int,
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ) -> None:
        self.capacity = max(1, capacity)
        self.queue_key = f"{key_prefix}-queue"
        self.sent_key = f"{key_prefix}-sent"
        self._test_key = f"{key_prefix}-test"
        self._kv = kv
        self._queue: List[Entry] = []
        self._sent: Batch = []
        self.available = self._probe()
        if self.available:
            self._recover()

    @property
    def budget(self) -> int:
        """Maximum serialized size of the pending array, in characters."""
        return self.capacity * PERSIST_BYTES_PER_ENTRY

    @property
    def pending(self) -> Tuple[Entry, ...]:
        return tuple(self._queue)

    @property
    def in_flight(self) -> Tuple[Entry, ...]:
        return tuple(self._sent)

    def size(self) -> int:
        return len(self._queue)

    def in_flight_size(self) -> int:
        return len(self._sent)

    def __len__(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def _probe(self) -> bool:
        if self._kv is None:
            return False
        try:
            self._kv.set(self._test_key, self._test_key)
            self._kv.remove(self._test_key)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("DurableQueue: storage unavailable: %s", e)
            return False
        return True

    def _load(self, key: str) -> List[Entry]:
        try:
            raw = self._kv.get(key)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("DurableQueue: cannot read %s: %s", key, e)
            return []
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("DurableQueue: discarding corrupt %s: %s", key, e)
            return []
        if not isinstance(data, list):
            logger.warning("DurableQueue: discarding %s, not a JSON array", key)
            return []
        return [str(item) for item in data]

    def _recover(self) -> None:
        recovered = self._load(self.sent_key)
        if recovered:
            logger.info(
                "DurableQueue: requeued %d unconfirmed entries from a previous run",
                len(recovered),
            )
        self._queue = recovered + self._load(self.queue_key)
        self.persist()
        self._remove(self.sent_key)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _remove(self, key: str) -> None:
        try:
            self._kv.remove(key)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("DurableQueue: cannot remove %s: %s", key, e)

    def persist(self) -> None:
        """
        Write pending entries, evicting the oldest until they fit the budget
        and the backend quota. Other backend errors leave memory untouched.
        """
        if not self.available:
            return
        evicted = 0
        while True:
            data = json.dumps(self._queue, ensure_ascii=False)
            if len(data) <= self.budget:
                try:
                    self._kv.set(self.queue_key, data)
                    break
                except StorageQuotaExceeded as e:
                    if not self._queue:
                        logger.warning("DurableQueue: cannot persist queue: %s", e)
                        break
                except Exception as e:  # pylint: disable=broad-exception-caught
                    logger.warning("DurableQueue: cannot persist queue: %s", e)
                    break
            self._queue.pop(0)
            evicted += 1
        if evicted:
            logger.warning("DurableQueue: evicted %d oldest entries to fit storage", evicted)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def push(self, entry: Entry) -> None:
        self._queue.append(entry)
        self.persist()

    def unshift(self, entries: Sequence[Entry]) -> None:
        """Put entries ahead of everything pending, for delivery first."""
        if entries:
            self._queue = list(entries) + self._queue
            self.persist()

    def form_batch(self) -> Batch:
        """Persist pending entries as the outstanding batch, unless one exists."""
        if not self._sent:
            self._sent = self._queue
            if self.available:
                try:
                    self._kv.set(self.sent_key, json.dumps(self._sent, ensure_ascii=False))
                except Exception as e:  # pylint: disable=broad-exception-caught
                    logger.warning("DurableQueue: cannot persist in-flight batch: %s", e)
            self._queue = []
            self.persist()
        return list(self._sent)

    def confirm(self) -> None:
        self._sent = []
        if self.available:
            self._remove(self.sent_key)

    def fail(self) -> None:
        """Put the outstanding batch back in front of pending."""
        self._queue = self._sent + self._queue
        self._sent = []
        self.persist()
        self.confirm()

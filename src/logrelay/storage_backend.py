"""
Storage backend: key/value persistence for the durable queue.

Calls are synchronous; the durable queue runs them inline on the event loop
thread. set() raises StorageQuotaExceeded when the value does not fit; the queue
evicts its oldest entries and retries. Any other exception (e.g. OSError)
is logged by the queue and the write is abandoned.
"""

from typing import Optional, Protocol


class DurableKV(Protocol):
    """Protocol for durable key/value storage (e.g. a directory of files)."""

    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key is absent."""

    def set(self, key: str, value: str) -> None:
        """Store value under key; raise if it cannot be stored."""

    def remove(self, key: str) -> None:
        """Delete key; absent keys are ignored."""

"""
Types for the log relay.
"""

from enum import StrEnum
from typing import List, Protocol

# Default entry-count capacities. A durable queue uses its capacity as a
# multiple of PERSIST_BYTES_PER_ENTRY to get its serialized budget.
DEFAULT_MEMORY_CAPACITY = 500
DEFAULT_PERSIST_CAPACITY = 50
PERSIST_BYTES_PER_ENTRY = 512

DEFAULT_KEY_PREFIX = "logrelay"

Entry = str
Batch = List[Entry]


class PersistMode(StrEnum):
    """
    Durable storage policy:
    - DEFAULT: volatile receiver, promoted to durable on delivery failure.
    - ALWAYS: durable receiver for the whole lifetime of the pipeline.
    - NEVER: volatile only; pushes evict the oldest entry on overflow.
    """

    DEFAULT = "default"
    ALWAYS = "always"
    NEVER = "never"


class Outcome(StrEnum):
    """Result of one delivery attempt."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class LogRelayError(Exception):
    """Base class for logrelay errors."""


class ConfigurationError(LogRelayError):
    """Attach/detach misuse or invalid options."""


class StorageQuotaExceeded(LogRelayError):
    """A DurableKV write did not fit in the backend's quota."""


class BatchQueue(Protocol):
    """Contract shared by the volatile and durable queues."""

    def push(self, entry: Entry) -> None:
        """Append one entry."""

    def form_batch(self) -> Batch:
        """Return the outstanding batch, forming one from pending if there is none."""

    def confirm(self) -> None:
        """Delivery acknowledged; forget the outstanding batch."""

    def fail(self) -> None:
        """Delivery failed; return the outstanding batch to the front of pending."""

    def size(self) -> int:
        """Number of pending entries."""

    def in_flight_size(self) -> int:
        """Number of entries in the outstanding batch."""


def render_batch(batch: Batch, as_json: bool) -> str:
    """Join entries into transport content: a JSON envelope or newline-separated text."""
    if as_json:
        return '{"messages":[' + ",".join(batch) + "]}"
    return "\n".join(batch)


def content_type(as_json: bool) -> str:
    """Content-Type header value for the rendered batch."""
    return "application/json" if as_json else "text/plain"

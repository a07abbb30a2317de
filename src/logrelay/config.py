"""
Options for the log relay pipeline.

Construct Options directly, or merge a partial mapping over the defaults
with Options.from_mapping({...}). Durations are in seconds.
"""

import random
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Tuple

from logrelay.types import (
    DEFAULT_KEY_PREFIX,
    DEFAULT_MEMORY_CAPACITY,
    DEFAULT_PERSIST_CAPACITY,
    ConfigurationError,
    PersistMode,
)


@dataclass(frozen=True)
class ExponentialBackoff:
    """
    Grow a retry interval: multiply, clamp to limit, then add up to
    `jitter` of the result at random.
    """

    multiplier: float = 2.0
    jitter: float = 0.1
    limit: float = 30.0

    def __call__(self, interval: float) -> float:
        nxt = min(interval * self.multiplier, self.limit)
        return nxt + nxt * self.jitter * random.random()


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-01-02T03:04:05.678Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class Options:
    """
    Pipeline configuration.

    - url: collector endpoint used by the default HTTP transport.
    - token: sent as "Authorization: Bearer <token>" when non-empty.
    - timeout: per-request timeout; 0 disables it.
    - interval: base pause between sends; reset to this after a success.
    - backoff: interval -> next interval after a failure.
    - persist: "default" | "always" | "never" (see PersistMode).
    - capacity: queue capacity; 0 picks 500 for "never", 50 otherwise.
    - trace: levels whose entries carry the caller's stack.
    - depth: extra innermost stack frames to drop from those stacks.
    - json: ship JSON records in a {"messages": [...]} envelope instead of text lines.
    - timestamp: returns the timestamp stamped on each record.
    - key_prefix: prefix of the durable storage keys.
    """

    url: str = "http://localhost/logger"
    token: str = ""
    timeout: float = 0
    interval: float = 1.0
    backoff: Callable[[float], float] = field(default_factory=ExponentialBackoff)
    persist: PersistMode = PersistMode.DEFAULT
    capacity: int = 0
    trace: Tuple[str, ...] = ("warning", "error", "critical")
    depth: int = 0
    json: bool = False
    timestamp: Callable[[], str] = utc_timestamp
    key_prefix: str = DEFAULT_KEY_PREFIX

    def __post_init__(self) -> None:
        try:
            self.persist = PersistMode(self.persist)
        except ValueError as e:
            raise ConfigurationError(f"unknown persist mode {self.persist!r}") from e
        for name in ("timeout", "interval", "capacity", "depth"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0")
        if not callable(self.backoff):
            raise ConfigurationError("backoff must be callable")
        self.trace = tuple(level.lower() for level in self.trace)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "Options":
        """Build Options from a partial mapping; unknown keys are an error."""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(f"unknown options: {', '.join(sorted(unknown))}")
        return cls(**dict(values))

    @property
    def authorization(self) -> str:
        return f"Bearer {self.token}"

    def resolved(self) -> "Options":
        """Copy with capacity defaulted for the persist mode."""
        if self.capacity:
            return replace(self)
        if self.persist == PersistMode.NEVER:
            return replace(self, capacity=DEFAULT_MEMORY_CAPACITY)
        return replace(self, capacity=DEFAULT_PERSIST_CAPACITY)

    def degraded(self) -> "Options":
        """Copy for volatile-only operation after durable storage proved unusable."""
        return replace(self, persist=PersistMode.NEVER, capacity=DEFAULT_MEMORY_CAPACITY)

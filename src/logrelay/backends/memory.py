"""
In-process key/value backend.

Survives pipeline detach/attach within one process (the store object is
shared), not process restarts. An optional quota bounds the total number of
characters held across all keys, mirroring browser-style storage limits.
"""

from typing import Dict, Optional

from logrelay.types import StorageQuotaExceeded


class MemoryKV:
    """Dict-backed DurableKV."""

    def __init__(self, *, quota: Optional[int] = None) -> None:
        """
        quota: maximum total characters (keys + values); None means unbounded.
        """
        self._data: Dict[str, str] = {}
        self._quota = quota

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._quota is not None:
            used = sum(len(k) + len(v) for k, v in self._data.items() if k != key)
            if used + len(key) + len(value) > self._quota:
                raise StorageQuotaExceeded(
                    f"{len(value)} chars for {key!r} exceed quota of {self._quota}"
                )
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        """Stored keys (for tests and inspection)."""
        return list(self._data)

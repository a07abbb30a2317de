"""
File key/value backend.

Each key is stored as one UTF-8 file in a directory. Writes go to a
temporary file first and are moved into place with os.replace, so a crash
mid-write leaves either the old or the new value, never a torn one.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Optional, Union

from logrelay.types import StorageQuotaExceeded

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class FileKV:
    """
    DurableKV that keeps one file per key under a directory.
    """

    def __init__(
        self,
        directory: Union[str, os.PathLike],
        *,
        quota: Optional[int] = None,
    ) -> None:
        """
        directory: created on first write if missing.
        quota: maximum characters per value; None means unbounded.
        """
        self._dir = Path(directory)
        self._quota = quota

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        return self._dir / (_UNSAFE.sub("_", key) + ".json")

    def get(self, key: str) -> Optional[str]:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        if self._quota is not None and len(value) > self._quota:
            raise StorageQuotaExceeded(
                f"{len(value)} chars for {key!r} exceed quota of {self._quota}"
            )
        self._dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, self._path(key))
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

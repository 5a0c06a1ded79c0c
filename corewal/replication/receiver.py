"""Replica-side storage of raw WAL records received from a primary."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import BinaryIO

__all__ = ["RawEntry", "Receiver"]


@dataclass(frozen=True)
class RawEntry:
    """One complete raw WAL record and where it sits in the primary's log."""

    offset: int
    raw_data: bytes
    record_size: int


def _open_append(path: str | os.PathLike[str]) -> BinaryIO:
    return open(
        path,
        "ab",
        buffering=0,
        opener=lambda p, flags: os.open(p, flags, 0o600),
    )


class Receiver:
    """Appends raw WAL records to a local replica WAL file, fsyncing each one."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._file: BinaryIO | None = _open_append(path)

    @property
    def path(self) -> str | os.PathLike[str]:
        """Path of the replica WAL file."""
        return self._path

    def _require_file(self) -> BinaryIO:
        if self._file is None:
            raise ValueError("replication: receiver is closed")
        return self._file

    def append(self, entry: RawEntry) -> None:
        """Write the entry's raw bytes to the file and fsync."""
        with self._lock:
            f = self._require_file()
            view = memoryview(entry.raw_data)
            while view:
                written = f.write(view) or 0
                view = view[written:]
            f.flush()
            os.fsync(f.fileno())

    def persisted_offset(self) -> int:
        """Size of the replica file, i.e. the offset persisted so far."""
        with self._lock:
            return os.fstat(self._require_file().fileno()).st_size

    def close(self) -> None:
        """Close the file; further calls do nothing."""
        with self._lock:
            if self._file is not None:
                try:
                    self._file.close()
                finally:
                    self._file = None

    def __enter__(self) -> Receiver:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
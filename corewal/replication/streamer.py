"""Tailing a WAL file and handing each raw record to a callback."""

from __future__ import annotations

import os
import threading
from collections.abc import Callable
from typing import BinaryIO

from corewal.replication.lag import ReplicationLag
from corewal.replication.receiver import RawEntry
from corewal.wal.errors import TruncatedError
from corewal.wal.record import read_record_at

__all__ = ["Streamer"]


def _read_exact(f: BinaryIO, size: int, offset: int) -> bytes:
    if hasattr(os, "pread"):
        data = os.pread(f.fileno(), size, offset)
    else:
        f.seek(offset)
        data = f.read(size)
    if len(data) < size:
        raise TruncatedError()
    return data


class Streamer:
    """Delivers the records of a WAL file, then waits for more.

    ``compaction_notify`` returns an event that is set when the WAL file has
    been swapped by compaction; the streamer then reopens the file by name
    and starts again from offset 0. ``poll_interval`` is in seconds.
    """

    def __init__(
        self,
        wal_file: BinaryIO,
        compaction_notify: Callable[[], threading.Event],
        lag: ReplicationLag,
        poll_interval: float,
    ) -> None:
        self._wal_file = wal_file
        self._compaction_notify = compaction_notify
        self._lag = lag
        self._poll_interval = poll_interval

    def _reopen(self, current: BinaryIO) -> BinaryIO:
        new_file = open(current.name, "rb")
        if current is not self._wal_file:
            current.close()
        return new_file

    def stream(
        self,
        stop: threading.Event,
        start_offset: int,
        fn: Callable[[RawEntry], None],
    ) -> None:
        """Call ``fn`` for every record from ``start_offset`` until ``stop`` is set.

        At the end of the file the streamer polls for new records. An
        exception raised by ``fn`` or by reading the WAL ends the stream and
        propagates.
        """
        f = self._wal_file
        offset = start_offset
        compaction = self._compaction_notify()
        try:
            while not stop.is_set():
                if compaction.is_set():
                    f = self._reopen(f)
                    offset = 0
                    compaction = self._compaction_notify()
                    continue

                try:
                    record = read_record_at(f, offset)
                except EOFError:
                    stop.wait(self._poll_interval)
                    continue

                size = record.size
                raw = _read_exact(f, size, offset)
                fn(RawEntry(offset=offset, raw_data=raw, record_size=size))

                offset += size
                self._lag.update_primary(offset)
        finally:
            if f is not self._wal_file:
                f.close()
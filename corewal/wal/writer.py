"""Sequential write-ahead log writer.

Each call appends one framed record,
``[Magic:4][Timestamp:8][Size:4][Payload:N][CRC32:4]``, to a file opened in
append mode. When records are flushed to disk is set by a SyncPolicy.
"""

from __future__ import annotations

import enum
import logging
import os
import struct
import threading
import time
import zlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import BinaryIO

from corewal.wal.record import (
    MAGIC_NUMBER,
    RECORD_CHECKSUM_SIZE,
    RECORD_HEADER_SIZE,
    Event,
    encode_event,
)

__all__ = ["SyncPolicy", "WalConfig", "WalWriter"]

_log = logging.getLogger(__name__)

_HEADER = struct.Struct(">IQI")
_CHECKSUM = struct.Struct(">I")
_MAX_PAYLOAD = 0xFFFFFFFF
_U64_MASK = (1 << 64) - 1


class SyncPolicy(enum.Enum):
    """When the writer calls fsync."""

    IMMEDIATE = "immediate"
    """After every write: safest and slowest."""

    INTERVAL = "interval"
    """From a background thread at a fixed interval."""

    NEVER = "never"
    """Only on explicit sync() or close()."""


@dataclass(frozen=True)
class WalConfig:
    """Settings for a WalWriter.

    ``sync_interval`` is in seconds and is used only with SyncPolicy.INTERVAL.
    """

    path: str | os.PathLike[str]
    sync_policy: SyncPolicy = SyncPolicy.IMMEDIATE
    sync_interval: float = 0.1


def _open_append(path: str | os.PathLike[str]) -> BinaryIO:
    return open(
        path,
        "ab",
        buffering=0,
        opener=lambda p, flags: os.open(p, flags, 0o600),
    )


def _frame(payload: bytes) -> bytes:
    if len(payload) > _MAX_PAYLOAD:
        raise ValueError(f"wal: payload longer than {_MAX_PAYLOAD} bytes")
    header = _HEADER.pack(MAGIC_NUMBER, time.time_ns() & _U64_MASK, len(payload))
    body = header + payload
    return body + _CHECKSUM.pack(zlib.crc32(body))


class WalWriter:
    """Appends framed records to a WAL file; safe for use from many threads.

    The writer tracks the file size so that each write can report the offset
    at which its record starts.
    """

    def __init__(self, config: WalConfig) -> None:
        if config.sync_policy is SyncPolicy.INTERVAL and config.sync_interval <= 0:
            raise ValueError("wal: sync_interval must be positive")
        self._config = config
        self._lock = threading.RLock()
        self._file: BinaryIO | None = _open_append(config.path)
        try:
            self._size = os.fstat(self._file.fileno()).st_size
        except OSError:
            self._file.close()
            raise

        self._compaction_lock = threading.Lock()
        self._compaction_event = threading.Event()

        self._sync_stop: threading.Event | None = None
        self._sync_thread: threading.Thread | None = None
        if config.sync_policy is SyncPolicy.INTERVAL:
            self._start_sync_thread()

    @property
    def config(self) -> WalConfig:
        """The configuration this writer was created with."""
        return self._config

    def _require_file(self) -> BinaryIO:
        if self._file is None:
            raise ValueError("wal: writer is closed")
        return self._file

    def _append(self, payload: bytes) -> int:
        """Write one record under the lock and return its starting offset."""
        record = _frame(bytes(payload))
        with self._lock:
            f = self._require_file()
            offset = self._size
            view = memoryview(record)
            while view:
                written = f.write(view)
                if written is None:
                    written = 0
                view = view[written:]
            f.flush()
            self._size += len(record)
            if self._config.sync_policy is SyncPolicy.IMMEDIATE:
                os.fsync(f.fileno())
            return offset

    def write(self, payload: bytes) -> None:
        """Append a record holding ``payload``."""
        self._append(payload)

    def write_offset(self, payload: bytes) -> int:
        """Append a record holding ``payload`` and return the offset it starts at."""
        return self._append(payload)

    def write_event_offset(self, event: Event) -> int:
        """Append an encoded event and return the offset its record starts at."""
        return self._append(encode_event(event))

    def write_event(self, event: Event) -> None:
        """Append an encoded event."""
        self._append(encode_event(event))

    def sync(self) -> None:
        """Flush the file to disk regardless of the sync policy."""
        with self._lock:
            f = self._require_file()
            f.flush()
            os.fsync(f.fileno())

    def close(self) -> None:
        """Stop background syncing, flush to disk and close the file."""
        if self._sync_stop is not None and self._sync_thread is not None:
            self._sync_stop.set()
            self._sync_thread.join()
            self._sync_stop = None
            self._sync_thread = None
        with self._lock:
            if self._file is None:
                return
            try:
                self.sync()
            finally:
                self._file.close()
                self._file = None

    def compaction_notify(self) -> threading.Event:
        """Return the event that is set when the next file swap completes.

        A fresh event is issued after every swap, so listeners must call
        this again once they have seen the signal.
        """
        with self._compaction_lock:
            return self._compaction_event

    def run_exclusive_swap(self, fn: Callable[[], tuple[BinaryIO, int]]) -> None:
        """Run ``fn`` with writes blocked and swap in the file it returns.

        ``fn`` returns ``(new_file, new_size)``. On success the writer appends
        to ``new_file`` from then on, its size is reset to ``new_size``,
        compaction listeners are signalled and the old file is closed. If
        ``fn`` raises, nothing changes and the exception propagates.
        """
        with self._lock:
            new_file, new_size = fn()

            with self._compaction_lock:
                old_event = self._compaction_event
                self._compaction_event = threading.Event()
            old_event.set()

            old_file = self._file
            self._file = new_file
            self._size = new_size
            if old_file is not None:
                old_file.close()

    def _start_sync_thread(self) -> None:
        stop = threading.Event()
        interval = self._config.sync_interval

        def loop() -> None:
            while not stop.wait(interval):
                try:
                    self.sync()
                except (OSError, ValueError) as exc:
                    _log.error(
                        "wal: background fsync failed path=%s error=%s",
                        self._config.path,
                        exc,
                    )

        self._sync_stop = stop
        self._sync_thread = threading.Thread(
            target=loop, name="wal-sync", daemon=True
        )
        self._sync_thread.start()

    def __enter__(self) -> WalWriter:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
"""Key-value store backed by a write-ahead log and an in-memory hash index.

Every write appends a record to the WAL and points the index at it, so the
latest record for a key wins. Reads look up the offset and decode the record
found there. On startup the index is rebuilt by replaying the WAL.

Two kinds of content are supported, each in its own WAL file:

* ingestion events, keyed by their source (``write_event`` / ``get`` /
  ``recover``);
* Raft-applied key-value pairs with a checkpoint of the last applied log
  index (``write_kv`` / ``delete_kv`` / ``get_kv`` / ``recover_kv``).
"""

from __future__ import annotations

import contextlib
import os
import threading
from collections.abc import Callable
from typing import BinaryIO

from corewal.kv.codec import (
    META_KEY_LAST_APPLIED,
    KVCorruptedError,
    RecordType,
    ReservedKeyError,
    decode_kv_record,
    encode_kv_del,
    encode_kv_meta,
    encode_kv_set,
)
from corewal.kv.index import HashIndex, IndexFullError
from corewal.wal.errors import CorruptedError, TruncatedError
from corewal.wal.record import Event, WalReader, decode_event, read_record_at
from corewal.wal.writer import SyncPolicy, WalConfig, WalWriter

__all__ = ["KeyNotFoundError", "KVStore"]


class KeyNotFoundError(KeyError):
    """The requested key is not in the store."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"kv: key not found: {self.key!r}"


def _open_append(path: str) -> BinaryIO:
    return open(
        path,
        "ab",
        buffering=0,
        opener=lambda p, flags: os.open(p, flags, 0o600),
    )


class KVStore:
    """A WAL-backed store with an in-memory index from key to record offset.

    The WAL file must already exist (the writer creates it). The store keeps
    its own read handle on the file; ``close`` releases it but leaves the
    writer open.
    """

    def __init__(
        self, writer: WalWriter, wal_path: str | os.PathLike[str], max_keys: int
    ) -> None:
        self._wal_path = os.fspath(wal_path)
        self._writer = writer
        self._lock = threading.RLock()
        self._read_file: BinaryIO | None = open(self._wal_path, "rb")
        self._index = HashIndex(max_keys)
        self._raft_last_applied = 0

    def _snapshot(self) -> tuple[HashIndex, BinaryIO]:
        with self._lock:
            if self._read_file is None:
                raise ValueError("kv: store is closed")
            return self._index, self._read_file

    # --- event ingestion ----------------------------------------------------

    def write_event(self, event: Event) -> None:
        """Append an event and index it under its source.

        Raises IndexFullError when the source is new and the index is full;
        the record stays in the WAL in that case.
        """
        offset = self._writer.write_event_offset(event)
        with self._lock:
            index = self._index
        index.set(event.source, offset)

    def get(self, key: str) -> Event:
        """Return the latest event written for ``key``.

        Raises KeyNotFoundError if the key is unknown, and the WAL's error if
        the record cannot be read or decoded.
        """
        index, read_file = self._snapshot()
        offset = index.get(key)
        if offset is None:
            raise KeyNotFoundError(key)
        record = read_record_at(read_file, offset)
        event = decode_event(record.data)
        event.received_at = record.timestamp
        return event

    def recover(self, on_recover: Callable[[Event], None] | None = None) -> int:
        """Rebuild the index by replaying the WAL and return the event count.

        ``on_recover`` is called with each recovered event. A truncated last
        record is the normal result of a crash and ends replay quietly; any
        other damage raises.
        """
        if not os.path.exists(self._wal_path):
            return 0
        with self._lock:
            index = self._index

        count = 0
        offset = 0
        with WalReader(self._wal_path) as reader:
            try:
                for record in reader:
                    try:
                        event = decode_event(record.data)
                    except CorruptedError as exc:
                        raise CorruptedError(
                            f"kv: recovery decode failed at offset {offset}: {exc}"
                        ) from exc
                    event.received_at = record.timestamp
                    try:
                        index.set(event.source, offset)
                    except IndexFullError as exc:
                        raise IndexFullError(
                            f"kv: recovery index full at offset {offset}"
                        ) from exc
                    if on_recover is not None:
                        on_recover(event)
                    offset += record.size
                    count += 1
            except TruncatedError:
                return count
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    def close(self) -> None:
        """Close the store's read handle."""
        with self._lock:
            if self._read_file is not None:
                try:
                    self._read_file.close()
                finally:
                    self._read_file = None

    # --- compaction ---------------------------------------------------------

    def compact(self) -> None:
        """Rewrite the WAL keeping only the latest record of each key.

        Writes are blocked for the whole operation. The compacted log is
        written to a temporary file, flushed, and renamed over the WAL; the
        index and read handle are then switched to the new file. A leftover
        temporary file from an earlier failed run is removed first.
        """
        temp_path = self._wal_path + ".compact"
        with contextlib.suppress(FileNotFoundError):
            os.remove(temp_path)

        def swap() -> tuple[BinaryIO, int]:
            index, read_file = self._snapshot()
            snapshot = index.snapshot()
            try:
                new_offsets = self._write_compacted(temp_path, snapshot, read_file)
                compacted_size = os.stat(temp_path).st_size
                os.replace(temp_path, self._wal_path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.remove(temp_path)
                raise

            read_file.close()
            new_read_file = open(self._wal_path, "rb")

            new_index = HashIndex(index.max_keys)
            try:
                for key, offset in new_offsets.items():
                    new_index.set(key, offset)
            except IndexFullError:
                new_read_file.close()
                raise

            with self._lock:
                self._read_file = new_read_file
                self._index = new_index

            return _open_append(self._wal_path), compacted_size

        self._writer.run_exclusive_swap(swap)

    @staticmethod
    def _write_compacted(
        dest_path: str, snapshot: dict[str, int], read_file: BinaryIO
    ) -> dict[str, int]:
        new_offsets: dict[str, int] = {}
        with WalWriter(WalConfig(path=dest_path, sync_policy=SyncPolicy.NEVER)) as w:
            for key, old_offset in snapshot.items():
                record = read_record_at(read_file, old_offset)
                event = decode_event(record.data)
                event.received_at = record.timestamp
                new_offsets[key] = w.write_event_offset(event)
            w.sync()
        return new_offsets

    # --- Raft key-value path ------------------------------------------------

    def write_kv(self, key: str, value: str, raft_index: int) -> None:
        """Durably record ``key = value`` applied at ``raft_index``.

        A checkpoint record for ``raft_index`` follows the data record. The
        caller may advance its applied index only once this returns.
        Raises ReservedKeyError for the reserved metadata key and
        IndexFullError when a new key does not fit in the index.
        """
        if key == META_KEY_LAST_APPLIED:
            raise ReservedKeyError()
        data = encode_kv_set(key, value, raft_index)
        with self._lock:
            offset = self._writer.write_offset(data)
            try:
                self._index.set(key, offset)
            except IndexFullError:
                # The record is in the WAL; checkpoint so it is not re-applied.
                with contextlib.suppress(Exception):
                    self._write_meta(raft_index)
                raise
            self._write_meta(raft_index)
            self._raft_last_applied = raft_index

    def delete_kv(self, key: str, raft_index: int) -> None:
        """Durably record the deletion of ``key`` applied at ``raft_index``.

        Raises ReservedKeyError for the reserved metadata key.
        """
        if key == META_KEY_LAST_APPLIED:
            raise ReservedKeyError()
        data = encode_kv_del(key, raft_index)
        with self._lock:
            self._writer.write_offset(data)
            self._index.delete(key)
            self._write_meta(raft_index)
            self._raft_last_applied = raft_index

    def get_kv(self, key: str) -> str | None:
        """Return the current value of ``key``, or None if it is absent."""
        index, read_file = self._snapshot()
        offset = index.get(key)
        if offset is None:
            return None
        record = read_record_at(read_file, offset)
        return decode_kv_record(record.data).value

    def recover_kv(self) -> int:
        """Replay the key-value WAL and return the last applied Raft index.

        Returns 0 when there is nothing to replay. A truncated last record is
        tolerated; other damage raises.
        """
        if not os.path.exists(self._wal_path):
            return 0
        with self._lock:
            index = self._index

        last_applied = 0
        offset = 0
        with WalReader(self._wal_path) as reader:
            try:
                for record in reader:
                    try:
                        rec = decode_kv_record(record.data)
                    except KVCorruptedError as exc:
                        raise KVCorruptedError(
                            f"kv: recover decode at offset {offset}: {exc}"
                        ) from exc
                    if rec.type == RecordType.SET:
                        try:
                            index.set(rec.key, offset)
                        except IndexFullError as exc:
                            raise IndexFullError(
                                f"kv: recover index full at offset {offset}"
                            ) from exc
                    elif rec.type == RecordType.DEL:
                        index.delete(rec.key)
                    elif rec.type == RecordType.META and rec.key == META_KEY_LAST_APPLIED:
                        last_applied = rec.raft_index
                    offset += record.size
            except TruncatedError:
                pass

        with self._lock:
            self._raft_last_applied = last_applied
        return last_applied

    def raft_last_applied(self) -> int:
        """The last Raft log index applied to this store."""
        with self._lock:
            return self._raft_last_applied

    def _write_meta(self, raft_index: int) -> None:
        self._writer.write(encode_kv_meta(META_KEY_LAST_APPLIED, raft_index))

    def __enter__(self) -> KVStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
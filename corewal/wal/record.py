"""WAL record format, event payload codec and sequential reader.

Record layout: ``[Magic:4][Timestamp:8][Size:4][Payload:N][CRC32:4]``, all
integers big-endian. The CRC32 (IEEE) covers header and payload.

Event payload layout: ``[SourceLen:2][Source:N][PayloadLen:2][Payload:M]``.
"""

from __future__ import annotations

import os
import struct
import zlib
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import BinaryIO

from corewal.wal.errors import (
    ChecksumMismatchError,
    CorruptedError,
    TruncatedError,
    WalError,
)

MAGIC_NUMBER = 0xCAFEBABE
RECORD_HEADER_SIZE = 4 + 8 + 4
RECORD_CHECKSUM_SIZE = 4
RECORD_MIN_SIZE = RECORD_HEADER_SIZE + RECORD_CHECKSUM_SIZE

_HEADER = struct.Struct(">IQI")
_CHECKSUM = struct.Struct(">I")
_LENGTH = struct.Struct(">H")
_MAX_FIELD = 0xFFFF
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_READ_BUFFER = 4 * 1024


@dataclass
class Event:
    """An ingested event: a source key and its payload."""

    source: str = ""
    payload: str = ""
    received_at: datetime | None = None


@dataclass(frozen=True)
class Record:
    """A single record read from a WAL file."""

    timestamp_ns: int
    data: bytes

    @property
    def timestamp(self) -> datetime:
        """The header timestamp as an aware UTC datetime."""
        return _EPOCH + timedelta(microseconds=self.timestamp_ns // 1000)

    @property
    def size(self) -> int:
        """Total on-disk size of the record, including header and checksum."""
        return RECORD_MIN_SIZE + len(self.data)


def _to_bytes(text: str) -> bytes:
    return text.encode("utf-8", errors="surrogateescape")


def _from_bytes(raw: bytes) -> str:
    return raw.decode("utf-8", errors="surrogateescape")


def encode_event(event: Event) -> bytes:
    """Serialise an event's source and payload into WAL payload bytes."""
    parts = []
    for name, text in (("source", event.source), ("payload", event.payload)):
        raw = _to_bytes(text)
        if len(raw) > _MAX_FIELD:
            raise ValueError(f"wal: event {name} longer than {_MAX_FIELD} bytes")
        parts.append(_LENGTH.pack(len(raw)))
        parts.append(raw)
    return b"".join(parts)


def decode_event(data: bytes) -> Event:
    """Rebuild an event from WAL payload bytes.

    ``received_at`` is left unset; callers take it from the record timestamp.
    Raises CorruptedError if the payload is malformed or truncated.
    """
    if len(data) < 2:
        raise CorruptedError()
    (source_len,) = _LENGTH.unpack_from(data, 0)
    pos = 2
    if len(data) < pos + source_len + 2:
        raise CorruptedError()
    source = _from_bytes(data[pos : pos + source_len])
    pos += source_len
    (payload_len,) = _LENGTH.unpack_from(data, pos)
    pos += 2
    if len(data) < pos + payload_len:
        raise CorruptedError()
    payload = _from_bytes(data[pos : pos + payload_len])
    return Event(source=source, payload=payload)


def _parse_header(header: bytes) -> tuple[int, int]:
    magic, timestamp, size = _HEADER.unpack(header)
    if magic != MAGIC_NUMBER:
        raise CorruptedError()
    if timestamp >= 1 << 63:
        timestamp -= 1 << 64
    return timestamp, size


def _verify(header: bytes, payload: bytes, checksum: bytes) -> None:
    (stored,) = _CHECKSUM.unpack(checksum)
    if zlib.crc32(payload, zlib.crc32(header)) != stored:
        raise ChecksumMismatchError()


def _read_at(f: BinaryIO, size: int, offset: int) -> bytes:
    if size == 0:
        return b""
    if hasattr(os, "pread"):
        return os.pread(f.fileno(), size, offset)
    f.seek(offset)
    return f.read(size)


def read_record_at(f: BinaryIO, offset: int) -> Record:
    """Read one complete record starting at ``offset`` in an open binary file.

    Raises EOFError if ``offset`` is at or past the end of the file,
    TruncatedError for a partial record, CorruptedError for a bad magic
    number and ChecksumMismatchError when the CRC32 does not match.
    """
    header = _read_at(f, RECORD_HEADER_SIZE, offset)
    if not header:
        raise EOFError(f"wal: no record at offset {offset}")
    if len(header) < RECORD_HEADER_SIZE:
        raise TruncatedError()
    timestamp, size = _parse_header(header)

    payload = _read_at(f, size, offset + RECORD_HEADER_SIZE)
    if len(payload) < size:
        raise TruncatedError()

    checksum = _read_at(f, RECORD_CHECKSUM_SIZE, offset + RECORD_HEADER_SIZE + size)
    if len(checksum) < RECORD_CHECKSUM_SIZE:
        raise TruncatedError()

    _verify(header, payload, checksum)
    return Record(timestamp_ns=timestamp, data=payload)


class WalReader:
    """Sequential reader over the records of a WAL file.

    Iterating yields records until a clean end of file. A damaged record
    raises its WalError; once that has happened, iterating again raises the
    same error. Not safe for concurrent use.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._file: BinaryIO | None = open(path, "rb", buffering=_READ_BUFFER)
        self._error: WalError | None = None

    def __iter__(self) -> Iterator[Record]:
        if self._error is not None:
            raise self._error
        while True:
            try:
                record = self._read_record()
            except WalError as exc:
                self._error = exc
                raise
            if record is None:
                return
            yield record

    def _read_record(self) -> Record | None:
        if self._file is None:
            raise ValueError("wal: reader is closed")
        header = self._file.read(RECORD_HEADER_SIZE)
        if not header:
            return None
        if len(header) < RECORD_HEADER_SIZE:
            raise TruncatedError()
        timestamp, size = _parse_header(header)

        # A file that ends exactly at a field boundary reads as a clean end.
        payload = self._file.read(size) if size else b""
        if len(payload) < size:
            if not payload:
                return None
            raise TruncatedError()

        checksum = self._file.read(RECORD_CHECKSUM_SIZE)
        if len(checksum) < RECORD_CHECKSUM_SIZE:
            if not checksum:
                return None
            raise TruncatedError()

        _verify(header, payload, checksum)
        return Record(timestamp_ns=timestamp, data=payload)

    def close(self) -> None:
        """Close the underlying file."""
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> WalReader:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
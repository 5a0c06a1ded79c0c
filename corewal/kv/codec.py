"""Encoding of key-value records stored as WAL payloads.

Layouts (integers little-endian):

* set:  ``[0x01][raftIndex:8][keyLen:2][key][valueLen:2][value]``
* del:  ``[0x02][raftIndex:8][keyLen:2][key]``
* meta: ``[0x03][raftIndex:8][keyLen:2][key][valueLen:2][value]``

Meta records use the reserved key ``META_KEY_LAST_APPLIED`` to checkpoint
the last applied Raft log index; their value is empty.
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

__all__ = [
    "META_KEY_LAST_APPLIED",
    "RecordType",
    "KVRecord",
    "ReservedKeyError",
    "KVCorruptedError",
    "encode_kv_set",
    "encode_kv_del",
    "encode_kv_meta",
    "decode_kv_record",
]

META_KEY_LAST_APPLIED = "__raft_last_applied__"

_INDEX = struct.Struct("<q")
_LENGTH = struct.Struct("<H")
_MAX_FIELD = 0xFFFF


class RecordType(enum.IntEnum):
    """The kind of a key-value WAL record."""

    SET = 0x01
    DEL = 0x02
    META = 0x03


class ReservedKeyError(ValueError):
    """A caller used the reserved metadata key as a user key."""

    def __init__(self, message: str = "kv: key is reserved for internal use") -> None:
        super().__init__(message)


class KVCorruptedError(Exception):
    """A key-value record payload could not be decoded."""

    def __init__(self, message: str = "kv: corrupted record") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class KVRecord:
    """A decoded key-value record. ``value`` is empty for del and meta records.

    ``type`` is a RecordType for known kinds and the raw byte otherwise.
    """

    type: RecordType | int
    raft_index: int
    key: str
    value: str = ""


def _string_field(text: str) -> bytes:
    raw = text.encode("utf-8", errors="surrogateescape")
    if len(raw) > _MAX_FIELD:
        raise ValueError(f"kv: string longer than {_MAX_FIELD} bytes")
    return _LENGTH.pack(len(raw)) + raw


def _encode(kind: RecordType, raft_index: int, *fields: str) -> bytes:
    return (
        bytes([kind])
        + _INDEX.pack(raft_index)
        + b"".join(_string_field(field) for field in fields)
    )


def encode_kv_set(key: str, value: str, raft_index: int) -> bytes:
    """Encode a record setting ``key`` to ``value``."""
    return _encode(RecordType.SET, raft_index, key, value)


def encode_kv_del(key: str, raft_index: int) -> bytes:
    """Encode a delete tombstone for ``key``."""
    return _encode(RecordType.DEL, raft_index, key)


def encode_kv_meta(key: str, raft_index: int) -> bytes:
    """Encode a metadata record; ``raft_index`` carries the checkpoint."""
    return _encode(RecordType.META, raft_index, key, "")


def _read_string(data: bytes, pos: int, what: str) -> tuple[str, int]:
    if len(data) - pos < 2:
        raise KVCorruptedError(
            f"kv: failed to read {what}: insufficient bytes for string length"
        )
    (length,) = _LENGTH.unpack_from(data, pos)
    pos += 2
    available = len(data) - pos
    if available < length:
        raise KVCorruptedError(
            f"kv: failed to read {what}: insufficient bytes for string data "
            f"(need {length}, have {available})"
        )
    raw = data[pos : pos + length]
    return raw.decode("utf-8", errors="surrogateescape"), pos + length


def decode_kv_record(data: bytes) -> KVRecord:
    """Parse a key-value WAL payload.

    Raises KVCorruptedError if the payload is malformed.
    """
    if not data:
        raise KVCorruptedError("kv: empty record payload")
    type_byte = data[0]
    if len(data) < 1 + _INDEX.size:
        raise KVCorruptedError("kv: record too short for raftIndex")
    (raft_index,) = _INDEX.unpack_from(data, 1)
    key, pos = _read_string(data, 1 + _INDEX.size, "key")

    value = ""
    if type_byte in (RecordType.SET, RecordType.META):
        value, _ = _read_string(data, pos, "value")

    kind: RecordType | int
    try:
        kind = RecordType(type_byte)
    except ValueError:
        kind = type_byte
    return KVRecord(type=kind, raft_index=raft_index, key=key, value=value)
"""Errors raised while reading write-ahead log records."""


class WalError(Exception):
    """Base class for all write-ahead log errors."""

    default_message = "wal: error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class TruncatedError(WalError):
    """A record was cut short at the end of the file.

    Expected after a crash: records before it are valid and reading stops.
    """

    default_message = "wal: record truncated at end of file"


class CorruptedError(WalError):
    """The magic number is wrong or a payload cannot be decoded."""

    default_message = "wal: magic number mismatch, file may be corrupted"


class ChecksumMismatchError(WalError):
    """A record's CRC32 checksum does not match its contents."""

    default_message = "wal: checksum mismatch"


class VersionUnsupportedError(WalError):
    """The log uses a protocol version this code does not understand."""

    default_message = "wal: unsupported protocol version"
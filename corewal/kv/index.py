"""In-memory hash index mapping keys to WAL record offsets."""

from __future__ import annotations

import threading

__all__ = ["IndexFullError", "HashIndex"]


class IndexFullError(Exception):
    """Adding a new key would exceed the index's key limit."""

    def __init__(self, message: str = "kv: index full, max keys exceeded") -> None:
        super().__init__(message)


class HashIndex:
    """Thread-safe map from key to the offset of its latest WAL record.

    Later writes for the same key replace earlier offsets. The number of
    distinct keys is bounded by ``max_keys``; overwriting an existing key is
    always allowed.
    """

    def __init__(self, max_keys: int) -> None:
        self._max_keys = max_keys
        self._entries: dict[str, int] = {}
        self._lock = threading.RLock()

    @property
    def max_keys(self) -> int:
        """The maximum number of distinct keys."""
        return self._max_keys

    def set(self, key: str, offset: int) -> None:
        """Point ``key`` at ``offset``.

        Raises IndexFullError when ``key`` is new and the index already holds
        ``max_keys`` entries.
        """
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_keys:
                raise IndexFullError()
            self._entries[key] = offset

    def get(self, key: str) -> int | None:
        """Return the offset stored for ``key``, or None if it is absent."""
        with self._lock:
            return self._entries.get(key)

    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        with self._lock:
            self._entries.pop(key, None)

    def snapshot(self) -> dict[str, int]:
        """Return a point-in-time copy of all entries."""
        with self._lock:
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
"""Tracking of replication lag between a primary and a replica."""

from __future__ import annotations

import threading

__all__ = ["ReplicationLag"]


class ReplicationLag:
    """Thread-safe byte offsets of primary and replica, plus reconnect count."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._primary_offset = 0
        self._replica_offset = 0
        self._reconnect_count = 0

    def update_primary(self, offset: int) -> None:
        """Record the latest offset streamed by the primary."""
        with self._lock:
            self._primary_offset = offset

    def update_replica(self, offset: int) -> None:
        """Record the latest offset persisted by the replica."""
        with self._lock:
            self._replica_offset = offset

    def bytes(self) -> int:
        """Current lag in bytes; never negative."""
        with self._lock:
            return max(0, self._primary_offset - self._replica_offset)

    def inc_reconnect(self) -> None:
        """Count one more replica reconnection."""
        with self._lock:
            self._reconnect_count += 1

    def reconnect_count(self) -> int:
        """Total number of replica reconnections."""
        with self._lock:
            return self._reconnect_count
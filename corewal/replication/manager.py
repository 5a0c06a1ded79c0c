"""Switching WAL streaming on and off with the node's cluster role."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from corewal.replication.server import ReplicationServer, StreamRequest, WALEntry
from corewal.replication.streamer import Streamer

__all__ = ["UnavailableError", "ManagedReplicationServer", "ReplicationManager"]

_log = logging.getLogger(__name__)


class UnavailableError(Exception):
    """Streaming was requested from a node that is not serving it."""


class ManagedReplicationServer:
    """A replication endpoint that is always present but only serves as leader.

    While inactive, ``stream_wal`` raises UnavailableError at once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active = False
        self._streamer: Streamer | None = None

    @property
    def active(self) -> bool:
        """Whether requests are currently served."""
        with self._lock:
            return self._active

    def activate(self, streamer: Streamer) -> None:
        """Serve requests using ``streamer``."""
        with self._lock:
            self._streamer = streamer
            self._active = True

    def deactivate(self) -> None:
        """Stop serving new requests; running streams end via their stop event."""
        with self._lock:
            self._active = False
            self._streamer = None

    def stream_wal(
        self,
        request: StreamRequest,
        send: Callable[[WALEntry], None],
        stop: threading.Event,
    ) -> None:
        """Stream WAL records to a replica, or raise UnavailableError if inactive."""
        with self._lock:
            active = self._active
            streamer = self._streamer
        if not active:
            raise UnavailableError("replication: this node is not the current leader")
        if streamer is None:
            raise UnavailableError("replication: streamer not initialised")
        ReplicationServer(streamer).stream_wal(request, send, stop)


class ReplicationManager:
    """Drives a ManagedReplicationServer from role transitions."""

    def __init__(
        self,
        streamer_factory: Callable[[], Streamer],
        repl_server: ManagedReplicationServer,
    ) -> None:
        self._streamer_factory = streamer_factory
        self._repl_server = repl_server

    def become_leader(self) -> None:
        """Start serving WAL streams with a freshly made streamer."""
        self._repl_server.activate(self._streamer_factory())
        _log.info("replication: became leader, StreamWAL now active")

    def become_follower(self) -> None:
        """Stop serving WAL streams."""
        self._repl_server.deactivate()
        _log.info("replication: became follower, StreamWAL deactivated")

    def become_standalone(self) -> None:
        """Disable replication for a single-node deployment."""
        self._repl_server.deactivate()
        _log.info("replication: standalone mode, replication disabled")
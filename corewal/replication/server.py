"""Serving a replica's request to stream WAL records."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from corewal.replication.receiver import RawEntry
from corewal.replication.streamer import Streamer

__all__ = ["StreamRequest", "WALEntry", "ReplicationServer"]

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamRequest:
    """A replica's request to receive WAL records from an offset onwards."""

    replica_id: str
    start_offset: int = 0


@dataclass(frozen=True)
class WALEntry:
    """One raw WAL record as sent to a replica."""

    offset: int
    raw_data: bytes
    record_size: int


class ReplicationServer:
    """Streams the primary's WAL to replicas through a Streamer."""

    def __init__(self, streamer: Streamer) -> None:
        self._streamer = streamer

    def stream_wal(
        self,
        request: StreamRequest,
        send: Callable[[WALEntry], None],
        stop: threading.Event,
    ) -> None:
        """Send WAL records to the replica via ``send`` until ``stop`` is set.

        An error from ``send`` or from reading the WAL ends the stream and
        propagates.
        """
        _log.info(
            "replication: replica connected replica_id=%s start_offset=%d",
            request.replica_id,
            request.start_offset,
        )

        def forward(entry: RawEntry) -> None:
            send(
                WALEntry(
                    offset=entry.offset,
                    raw_data=entry.raw_data,
                    record_size=entry.record_size,
                )
            )

        try:
            self._streamer.stream(stop, request.start_offset, forward)
        except Exception as exc:
            if not stop.is_set():
                _log.warning(
                    "replication: streamer error replica_id=%s err=%s",
                    request.replica_id,
                    exc,
                )
            raise
        finally:
            _log.info(
                "replication: replica disconnected replica_id=%s", request.replica_id
            )
import threading

import pytest

from corewal.replication.lag import ReplicationLag
from corewal.replication.server import ReplicationServer, StreamRequest
from corewal.replication.streamer import Streamer
from corewal.wal.record import RECORD_CHECKSUM_SIZE, RECORD_HEADER_SIZE
from corewal.wal.writer import SyncPolicy, WalConfig, WalWriter


@pytest.fixture
def wal_file(tmp_path):
    path = tmp_path / "test.wal"
    w = WalWriter(WalConfig(path=path, sync_policy=SyncPolicy.NEVER))
    w.write(b"entry-A")
    w.write(b"entry-B")
    w.close()
    with open(path, "rb") as f:
        yield f, w


def _server(wal_file, lag=None):
    f, w = wal_file
    if lag is None:
        lag = ReplicationLag()
    return ReplicationServer(Streamer(f, w.compaction_notify, lag, 0.01))


def _guarded(stop):
    timer = threading.Timer(2.0, stop.set)
    timer.daemon = True
    timer.start()
    return timer


def test_stream_wal_sends_entries(wal_file):
    lag = ReplicationLag()
    server = _server(wal_file, lag)
    received = []
    stop = threading.Event()
    timer = _guarded(stop)

    def send(entry):
        received.append(entry)
        if len(received) == 2:
            stop.set()

    server.stream_wal(StreamRequest(replica_id="test-replica", start_offset=0), send, stop)
    timer.cancel()

    summary = [
        (
            e.offset,
            e.record_size,
            len(e.raw_data),
            e.raw_data[RECORD_HEADER_SIZE:-RECORD_CHECKSUM_SIZE],
        )
        for e in received
    ]
    assert summary == [
        (0, 27, 27, b"entry-A"),
        (27, 27, 27, b"entry-B"),
    ]
    assert lag.bytes() == 54


def test_stream_wal_respects_start_offset(wal_file):
    lag = ReplicationLag()
    server = _server(wal_file, lag)
    first_size = RECORD_HEADER_SIZE + len(b"entry-A") + RECORD_CHECKSUM_SIZE
    received = []
    stop = threading.Event()
    timer = _guarded(stop)

    def send(entry):
        received.append(entry)
        stop.set()

    server.stream_wal(StreamRequest("test-replica", first_size), send, stop)
    timer.cancel()

    assert [e.offset for e in received] == [first_size]
    assert lag.bytes() == 54


def test_stream_wal_propagates_send_error(wal_file):
    server = _server(wal_file)
    stop = threading.Event()
    timer = _guarded(stop)

    def send(entry):
        raise ConnectionError("replica gone")

    with pytest.raises(ConnectionError):
        server.stream_wal(StreamRequest("test-replica"), send, stop)
    timer.cancel()
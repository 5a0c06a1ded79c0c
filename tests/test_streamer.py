import os
import threading

import pytest

from corewal.replication.lag import ReplicationLag
from corewal.replication.streamer import Streamer
from corewal.wal.errors import TruncatedError
from corewal.wal.record import RECORD_CHECKSUM_SIZE, RECORD_HEADER_SIZE
from corewal.wal.writer import SyncPolicy, WalConfig, WalWriter


def _make_wal(path, payloads):
    w = WalWriter(WalConfig(path=path, sync_policy=SyncPolicy.NEVER))
    for payload in payloads:
        w.write(payload)
    w.sync()
    return w


def _payload(entry):
    return entry.raw_data[RECORD_HEADER_SIZE:-RECORD_CHECKSUM_SIZE]


def _guarded(stop, seconds=2.0):
    timer = threading.Timer(seconds, stop.set)
    timer.daemon = True
    timer.start()
    return timer


def test_streamer_sends_records(tmp_path):
    path = tmp_path / "test.wal"
    w = _make_wal(path, [b"hello", b"world", b"bye"])
    w.close()

    lag = ReplicationLag()
    entries = []
    stop = threading.Event()
    timer = _guarded(stop)

    def collect(entry):
        entries.append(entry)
        if len(entries) == 3:
            stop.set()

    with open(path, "rb") as f:
        Streamer(f, w.compaction_notify, lag, 0.005).stream(stop, 0, collect)
    timer.cancel()

    assert len(entries) == 3
    for previous, current in zip(entries, entries[1:]):
        assert current.offset > previous.offset
    assert [_payload(e) for e in entries] == [b"hello", b"world", b"bye"]
    assert b"".join(e.raw_data for e in entries) == path.read_bytes()
    assert all(e.record_size == len(e.raw_data) for e in entries)
    assert lag.bytes() == os.path.getsize(path)


def test_streamer_starts_at_offset(tmp_path):
    path = tmp_path / "test.wal"
    w = _make_wal(path, [b"hello", b"world", b"bye"])
    w.close()
    first_size = RECORD_HEADER_SIZE + len(b"hello") + RECORD_CHECKSUM_SIZE

    entries = []
    stop = threading.Event()
    timer = _guarded(stop)

    def collect(entry):
        entries.append(entry)
        if len(entries) == 2:
            stop.set()

    with open(path, "rb") as f:
        Streamer(f, w.compaction_notify, ReplicationLag(), 0.005).stream(
            stop, first_size, collect
        )
    timer.cancel()

    assert [_payload(e) for e in entries] == [b"world", b"bye"]
    assert entries[0].offset == first_size


def test_streamer_propagates_callback_error(tmp_path):
    path = tmp_path / "test.wal"
    w = _make_wal(path, [b"hello"])
    w.close()

    def fail(entry):
        raise ConnectionError("send failed")

    stop = threading.Event()
    timer = _guarded(stop)
    with open(path, "rb") as f, pytest.raises(ConnectionError):
        Streamer(f, w.compaction_notify, ReplicationLag(), 0.005).stream(stop, 0, fail)
    timer.cancel()


def test_streamer_raises_on_truncated_record(tmp_path):
    path = tmp_path / "test.wal"
    path.write_bytes(b"\x00" * 10)
    stop = threading.Event()
    timer = _guarded(stop)
    with open(path, "rb") as f, pytest.raises(TruncatedError):
        Streamer(f, threading.Event, ReplicationLag(), 0.005).stream(
            stop, 0, lambda e: None
        )
    timer.cancel()


def test_streamer_returns_when_stopped_at_end_of_file(tmp_path):
    path = tmp_path / "test.wal"
    w = _make_wal(path, [b"only"])
    w.close()
    entries = []
    stop = threading.Event()
    timer = threading.Timer(0.1, stop.set)
    timer.start()
    with open(path, "rb") as f:
        Streamer(f, w.compaction_notify, ReplicationLag(), 0.005).stream(
            stop, 0, entries.append
        )
    timer.cancel()
    assert [_payload(e) for e in entries] == [b"only"]


def test_streamer_restarts_after_compaction(tmp_path):
    path = tmp_path / "test.wal"
    writer = _make_wal(path, [b"alpha", b"beta"])

    entries = []
    got_two = threading.Event()
    stop = threading.Event()
    timer = _guarded(stop, 5.0)

    def collect(entry):
        entries.append(entry)
        if len(entries) == 2:
            got_two.set()
        if len(entries) == 3:
            stop.set()

    with open(path, "rb") as f:
        streamer = Streamer(f, writer.compaction_notify, ReplicationLag(), 0.005)
        thread = threading.Thread(target=streamer.stream, args=(stop, 0, collect))
        thread.start()
        assert got_two.wait(2.0)

        temp = tmp_path / "test.wal.compact"
        compacted = _make_wal(temp, [b"gamma"])
        compacted.close()
        os.replace(temp, path)
        writer.run_exclusive_swap(lambda: (open(path, "ab"), os.path.getsize(path)))

        thread.join(5.0)
    timer.cancel()
    writer.close()

    assert not thread.is_alive()
    assert len(entries) == 3
    assert entries[2].offset == 0
    assert _payload(entries[2]) == b"gamma"
import time

import pytest

from corewal.wal.record import (
    RECORD_MIN_SIZE,
    Event,
    WalReader,
    decode_event,
    read_record_at,
)
from corewal.wal.writer import SyncPolicy, WalConfig, WalWriter


def _payloads(path):
    with WalReader(path) as reader:
        return [record.data for record in reader]


def _writer(path, policy=SyncPolicy.NEVER, **kwargs):
    return WalWriter(WalConfig(path=path, sync_policy=policy, **kwargs))


def test_compaction_notify_set_after_swap(tmp_path):
    path = tmp_path / "wal-compaction.wal"
    path.touch()
    new_path = tmp_path / "wal-new.wal"
    with _writer(path) as writer:
        first = writer.compaction_notify()
        assert not first.is_set()

        new_file = open(new_path, "ab")
        writer.run_exclusive_swap(lambda: (new_file, 0))

        assert first.wait(0.1)
        second = writer.compaction_notify()
        assert second is not first
        assert not second.is_set()


def test_failed_swap_keeps_file_and_does_not_notify(tmp_path):
    path = tmp_path / "a.wal"
    with _writer(path) as writer:
        writer.write(b"one")
        event = writer.compaction_notify()

        def boom():
            raise RuntimeError("swap failed")

        with pytest.raises(RuntimeError, match="swap failed"):
            writer.run_exclusive_swap(boom)
        assert not event.is_set()
        writer.write(b"two")
    assert _payloads(path) == [b"one", b"two"]


def test_swap_redirects_writes_and_resets_offset(tmp_path):
    path = tmp_path / "old.wal"
    new_path = tmp_path / "new.wal"
    with _writer(path) as writer:
        writer.write(b"before")
        new_file = open(new_path, "ab")
        writer.run_exclusive_swap(lambda: (new_file, 0))
        assert writer.write_offset(b"after") == 0
    assert _payloads(path) == [b"before"]
    assert _payloads(new_path) == [b"after"]


def test_write_offsets_advance_by_record_size(tmp_path):
    path = tmp_path / "offsets.wal"
    with _writer(path) as writer:
        assert writer.write_offset(b"abc") == 0
        assert writer.write_offset(b"defgh") == RECORD_MIN_SIZE + 3
        assert writer.write_offset(b"") == 2 * RECORD_MIN_SIZE + 8
    assert path.stat().st_size == 3 * RECORD_MIN_SIZE + 8


def test_plain_write_advances_tracked_offset(tmp_path):
    path = tmp_path / "mixed.wal"
    with _writer(path) as writer:
        writer.write(b"xy")
        assert writer.write_offset(b"z") == RECORD_MIN_SIZE + 2


def test_reopen_continues_from_existing_size(tmp_path):
    path = tmp_path / "reopen.wal"
    with _writer(path) as writer:
        writer.write(b"hello")
    with _writer(path) as writer:
        assert writer.write_offset(b"world") == RECORD_MIN_SIZE + 5
    assert _payloads(path) == [b"hello", b"world"]


def test_write_event_offset_round_trip(tmp_path):
    path = tmp_path / "events.wal"
    with _writer(path) as writer:
        writer.write_event(Event(source="first", payload="p1"))
        offset = writer.write_event_offset(
            Event(source="bench-source", payload="payload-data-for-benchmark-test")
        )
    with open(path, "rb") as f:
        record = read_record_at(f, offset)
    event = decode_event(record.data)
    assert event.source == "bench-source"
    assert event.payload == "payload-data-for-benchmark-test"


def test_record_timestamp_is_write_time(tmp_path):
    path = tmp_path / "ts.wal"
    before = time.time_ns()
    with _writer(path) as writer:
        writer.write(b"stamp")
    after = time.time_ns()
    with WalReader(path) as reader:
        (record,) = list(reader)
    assert before <= record.timestamp_ns <= after


@pytest.mark.parametrize("policy", list(SyncPolicy))
def test_many_writes_are_all_readable(tmp_path, policy):
    path = tmp_path / "bench.wal"
    payload = bytes(i % 256 for i in range(100))
    with _writer(path, policy) as writer:
        for _ in range(50):
            writer.write(payload)
    records = _payloads(path)
    assert len(records) == 50
    assert all(data == payload for data in records)


def test_interval_policy_syncs_in_background(tmp_path):
    path = tmp_path / "interval.wal"
    writer = _writer(path, SyncPolicy.INTERVAL, sync_interval=0.01)
    writer.write(b"tick")
    time.sleep(0.05)
    writer.close()
    assert _payloads(path) == [b"tick"]


def test_interval_policy_rejects_non_positive_interval(tmp_path):
    with pytest.raises(ValueError):
        _writer(tmp_path / "bad.wal", SyncPolicy.INTERVAL, sync_interval=0)


def test_write_after_close_raises(tmp_path):
    writer = _writer(tmp_path / "closed.wal")
    writer.close()
    with pytest.raises(ValueError):
        writer.write(b"late")


def test_explicit_sync_keeps_data(tmp_path):
    path = tmp_path / "sync.wal"
    with _writer(path) as writer:
        writer.write(b"alpha")
        writer.sync()
        assert _payloads(path) == [b"alpha"]
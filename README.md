# corewal

A small storage library built around an append-only write-ahead log (WAL).
It has three parts.

- `corewal.wal` holds the log itself. Each record is framed as
  `[magic:4][timestamp:8][size:4][payload:N][crc32:4]`, all big-endian. The
  CRC32 covers the header and the payload. Records are read in order with
  `WalReader`, or at a given offset with `read_record_at`. They are written
  by `WalWriter`, whose fsync behaviour is set by `SyncPolicy`.
- `corewal.kv` holds a Bitcask-style key-value store, `KVStore`. It keeps an
  in-memory `HashIndex` from each key to the WAL offset of that key's
  latest record. It rebuilds the index by replaying the log. It can compact
  the log so that only the latest record of each key remains.
- `corewal.replication` streams WAL records from a primary to replicas. A
  `Streamer` tails the log. `ReplicationServer` and
  `ManagedReplicationServer` hand the records to a callback. A `Receiver`
  appends raw records to a replica's file. `ReplicationLag` tracks byte
  offsets.

The package uses only the standard library.

## Installation

```
pip install .
```

## Writing and reading a log

```python
from corewal.wal.record import Event, WalReader, decode_event
from corewal.wal.writer import SyncPolicy, WalConfig, WalWriter

config = WalConfig(path="events.wal", sync_policy=SyncPolicy.NEVER)
with WalWriter(config) as writer:
    offset = writer.write_event_offset(Event(source="sensor-1", payload="42"))
    writer.write(b"raw payload")

with WalReader("events.wal") as reader:
    for record in reader:
        print(record.timestamp, record.size, record.data)
```

### Writer

`WalWriter` opens the file in append mode and creates it with mode `0600`
if it does not exist. It is safe to use from several threads. It provides:

- `write` and `write_offset`, which append a raw payload;
- `write_event` and `write_event_offset`, which append an encoded `Event`.

The `*_offset` methods return the byte offset at which the record starts.

The sync policy decides when the file is flushed to disk:

- `SyncPolicy.IMMEDIATE`, the default, calls fsync after every write.
- `SyncPolicy.INTERVAL` runs fsync from a background thread every
  `WalConfig.sync_interval` seconds. The default interval is 0.1 seconds,
  and the interval must be positive.
- `SyncPolicy.NEVER` calls fsync only when `sync()` or `close()` is called.

`run_exclusive_swap(fn)` blocks all writes while `fn` runs. `fn` returns a
tuple `(new_file, new_size)`. The writer then appends to the new file, sets
its size to `new_size` and closes the old file. `compaction_notify()`
returns a `threading.Event` that is set when the next swap completes. A
fresh event is issued after each swap, so a listener calls
`compaction_notify()` again after it sees the signal.

### Reader and errors

Iterating a `WalReader` yields `Record` objects until the file ends cleanly.
A damaged record raises one of these errors, all subclasses of `WalError`
from `corewal.wal.errors`:

- `TruncatedError`: a partial record at the tail of the file.
- `CorruptedError`: a bad magic number.
- `ChecksumMismatchError`: a failed CRC check.

After an error, iterating the same reader again raises the same error.

`read_record_at(f, offset)` reads a single record from a file opened in
binary mode. It raises `EOFError` when `offset` is at or past the end of
the file.

### Event payloads

`encode_event` and `decode_event` convert an `Event` to and from its
payload, laid out as `[SourceLen:2][Source][PayloadLen:2][Payload]`.
Encoding raises `ValueError` for a field longer than 65535 bytes. Decoding
raises `CorruptedError` for a malformed payload.

## Key-value store

```python
from corewal.kv.store import KVStore
from corewal.wal.record import Event
from corewal.wal.writer import SyncPolicy, WalConfig, WalWriter

writer = WalWriter(WalConfig(path="kv.wal", sync_policy=SyncPolicy.NEVER))
with KVStore(writer, "kv.wal", max_keys=10_000) as store:
    store.recover(None)               # rebuild the index from the log
    store.write_event(Event(source="a", payload="v1"))
    store.write_event(Event(source="a", payload="v2"))
    print(store.get("a").payload)     # "v2"
    print(len(store))                 # 1
    store.compact()                   # keep only the latest record per key
writer.close()
```

The WAL file must exist before a `KVStore` is created; creating the writer
first does that. `close()` on the store releases only its own read handle.
The writer stays open and has to be closed separately.

Behaviour of the main methods:

- `get(key)` returns the latest `Event` for that key, with `received_at`
  set from the record timestamp. It raises `KeyNotFoundError` (a
  `KeyError`) for an unknown key.
- Adding a new key beyond `max_keys` raises `IndexFullError`. Overwriting an
  existing key is always allowed.
- `recover(on_recover)` replays the log and returns the number of events. It
  calls `on_recover` with each event when that argument is not `None`. A
  truncated last record ends replay quietly. Other damage raises.
- `compact()` holds the writer's exclusive swap for the whole operation.
  It writes the latest record of each key to `<wal>.compact`, fsyncs it,
  renames it over the WAL, and switches the index and read handle to the
  new file. A leftover `.compact` file from an earlier run is removed first.

### Raft-applied key-value pairs

These methods are meant for a log file kept separate from event ingestion.

- `write_kv(key, value, raft_index)` appends a set record and then a
  checkpoint record.
- `delete_kv(key, raft_index)` appends a delete record and then a
  checkpoint record.
- `get_kv(key)` returns the current value, or `None` if the key is absent.
- `recover_kv()` replays the log, rebuilds the index and returns the last
  checkpointed index. It returns 0 when there is nothing to replay.
- `raft_last_applied()` returns the last index applied.

The checkpoint key, `META_KEY_LAST_APPLIED` in `corewal.kv.codec`, is
reserved. Passing it as a user key raises `ReservedKeyError`.

The record format is available on its own in `corewal.kv.codec`:
`encode_kv_set`, `encode_kv_del`, `encode_kv_meta` and `decode_kv_record`.
`decode_kv_record` raises `KVCorruptedError` for a malformed payload.

## Replication

```python
import threading

from corewal.replication.lag import ReplicationLag
from corewal.replication.receiver import Receiver
from corewal.replication.streamer import Streamer
from corewal.wal.writer import SyncPolicy, WalConfig, WalWriter

writer = WalWriter(WalConfig(path="primary.wal", sync_policy=SyncPolicy.NEVER))
lag = ReplicationLag()
stop = threading.Event()

with open("primary.wal", "rb") as wal_file, Receiver("replica.wal") as receiver:
    streamer = Streamer(wal_file, writer.compaction_notify, lag, poll_interval=0.01)
    worker = threading.Thread(
        target=streamer.stream,
        args=(stop, receiver.persisted_offset(), receiver.append),
    )
    worker.start()
    writer.write(b"hello")
    # ... later ...
    stop.set()
    worker.join()
    lag.update_replica(receiver.persisted_offset())
    print(lag.bytes())
writer.close()
```

### Streamer

`Streamer.stream(stop, start_offset, fn)` calls `fn` with a `RawEntry` for
each record. A `RawEntry` holds the record's offset, its raw bytes and its
size. At the end of the file the streamer waits `poll_interval` seconds and
tries again, until `stop` is set. When the compaction event is set, it
reopens the file by name and starts again at offset 0. The stream ends when
`fn` raises or the WAL cannot be read, and the exception propagates.

### Servers

`ReplicationServer(streamer).stream_wal(request, send, stop)` serves one
replica. The request is a `StreamRequest(replica_id, start_offset)`, and
each record is passed to `send` as a `WALEntry`.

`ManagedReplicationServer` does the same, but only while it is active.
While inactive, `stream_wal` raises `UnavailableError`.
`ReplicationManager(streamer_factory, server)` switches it between states:

- `become_leader()` activates it with a new streamer from the factory.
- `become_follower()` and `become_standalone()` deactivate it.

### Receiver and lag

`Receiver.append` writes the raw bytes of an entry and fsyncs them.
`Receiver.persisted_offset()` returns the size of the replica file.

`ReplicationLag.bytes()` returns the primary offset minus the replica
offset, never less than zero. `inc_reconnect()` and `reconnect_count()`
keep a count of reconnections.

## What this package does not do

- It has no network transport. The servers deliver records to a `send`
  callable that you supply.
- There is no replica-side client that connects to a primary, reconnects
  or backs off. You drive the `Receiver` yourself.
- There is no command-line program and no running server process. This is
  a library only.

## Tests

```
pip install .[test]
pytest
```
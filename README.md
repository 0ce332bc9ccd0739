# mdcrdt

Building blocks for replicating CRDT documents between peers. The package has four modules.

- `mdcrdt.ids` defines `OpId` and `StateVector`. An `OpId` is a frozen `(counter, peer)` pair that orders by counter, then by peer. A `StateVector` records the highest counter seen for each peer. It offers `get`, `set` and `items`.
- `mdcrdt.sync` defines a `Document`, which is an operation log. It applies incoming operations in order for each peer. An operation that arrives before its predecessors is held back until they arrive. The document also keeps an outbox of local operations. `validate_changes` checks a `ChangeMessage` against `ValidationLimits`.
- `mdcrdt.storage` defines `Storage`, a directory that holds:
  - a checksummed snapshot segment, guarded by two identical superblocks;
  - numbered operation segments;
  - a tombstone list.

  Compaction archives old segments and prunes tombstones.
- `mdcrdt.oracle` holds simple reference implementations for differential testing:
  - `Sequence`, a naive sequence CRDT driven by `InsertOp` and `DeleteOp`;
  - `SyncOracle`, a plain operation log.

The package uses only the standard library.

## Installing

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Syncing two peers

```python
from mdcrdt.ids import OpId
from mdcrdt.sync import ChangeMessage, Document, Operation, ValidationLimits, validate_changes

alice = Document()
bob = Document()

alice.add_local_op(Operation(OpId(counter=1, peer=1), b"\x01"))
alice.add_local_op(Operation(OpId(counter=2, peer=1), b"\x02"))

message = ChangeMessage(since=bob.state_vector(), ops=alice.outbox())
validate_changes(message, ValidationLimits(), bob.pending_count())
result = bob.apply_changes(message)
alice.mark_sent([op.id for op in message.ops])

assert result.applied == [OpId(1, 1), OpId(2, 1)]
assert bob.state_vector().get(1) == 2
```

### Applying changes

`apply_changes` returns an `ApplyResult`:

- `applied` lists the operations applied, in the order they were applied.
- `buffered` lists the operations still waiting for an earlier counter from the same peer.

Operations the document already has are skipped. When a missing predecessor arrives, any buffered operations that have become ready are applied straight after it.

Other methods:

- `pending()` returns the buffered operations in id order, for persistence.
- `restore_pending()` puts buffered operations back, for example after a restart.
- `encode_changes_since(state_vector)` builds a `ChangeMessage` holding every applied operation that the given state vector does not cover.
- `mark_sent()` moves operations from the outbox to the sent set.
- `mark_confirmed()` stops tracking sent operations.

### Validation

`validate_changes` returns nothing when the message is acceptable. Otherwise it raises a subclass of `ValidationError`. The checks run in this order:

1. `ResourceLimitExceededError` when the message has more operations than `max_ops_per_message` allows (default 10,000).
2. `ResourceLimitExceededError` when the total payload is larger than `max_payload_bytes` (default 10 MiB).
3. `BufferFullError` when the pending count plus the message's operations would exceed `max_pending_buffer` (default 100,000).
4. `MalformedOperationError` when an operation has an empty payload (`MalformedKind.EMPTY_PAYLOAD`) or a zero counter (`MalformedKind.ZERO_COUNTER`).

`InvalidReferenceError`, the other `MalformedKind` members and the conflict types exist for callers to use:

- `ConcurrentInsert`
- `ConcurrentDelete`
- `AttributeConflict`

`validate_changes` never raises `InvalidReferenceError` or the other kinds. `apply_changes` never reports conflicts, so `ApplyResult.conflicts` stays empty.

## Storing snapshots

```python
from mdcrdt.storage import Storage, TombstoneRetention

storage = Storage("data-dir")  # the directory is created if needed
storage.write_snapshot(b"document bytes", b"pending ops", False)
payload, pending, flag = storage.read_snapshot()

storage.append_op_segment(b"op")  # writes data-dir/ops/op_0
report = storage.compact(
    b"new bytes", b"pending ops", False,
    TombstoneRetention.max_count(100), [1, 2, 3],
)
print(report.archived_segments, report.archived_ops,
      report.pruned_tombstones, report.kept_tombstones)
print(storage.read_tombstones())
```

### Reading

`read_snapshot` returns a `Snapshot` named tuple: `payload`, `pending_ops`, `seq_ref_index_flag`. It uses whichever superblock can be read first, so losing one of the two superblocks is survived.

It raises:

- `MissingStorageError` when neither superblock exists.
- `CorruptStorageError` when a superblock cannot be decoded, or when the format version, the segment length or the segment checksum does not match. The `reason` attribute says which.

Other I/O failures propagate as `OSError`.

### Compacting

`compact` does the following:

1. Moves the current segment and every op segment into `archive/`.
2. Adds the new tombstones to the stored ones.
3. Prunes the tombstones according to the `TombstoneRetention`. `keep_all()` keeps every tombstone. `max_count(n)` keeps the last `n`.
4. Writes the new snapshot.

Tombstones must be unsigned 64-bit integers.

## What this package does not do

Payloads are opaque bytes. There is no Markdown parser, document model or text-editing layer on top of the operation log.

Nothing is sent over a network. Moving `ChangeMessage` values between peers is up to the caller.

There is no command-line tool.
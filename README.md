# rollblock

A state store for block-structured data. Keys are 8-byte values. Values are
unsigned 64-bit integers. Writing the value `0` deletes a key. Changes are
applied one block at a time, and every block can be rolled back.

The package needs only the standard library.

## Modules

- `rollblock.types`: the value types (`Operation`, `ShardOp`, `UndoEntry`,
  `UndoOp`, `ShardUndo`, `BlockUndo`, `ShardDelta`, `BlockDelta`, `StateStats`,
  `ShardStats`, `JournalMeta`) and the abstract `StateShard`. If a key is not
  8 bytes long, or a value does not fit in 64 unsigned bits, a `ValueError` is
  raised.
- `rollblock.raw_table`: `RawTableShard` is a dictionary-backed shard guarded by a
  lock. `apply(ops)` returns a `ShardUndo`. `revert(undo)` restores the earlier
  state. `export_data`, `visit_entries` and `import_data` read out the contents
  or replace them.
- `rollblock.hashing`: `keyed_hash(key, data)` is a pure-Python BLAKE3 keyed hash.
  `shard_hash(key)` gives the stable 64-bit routing hash. `shard_index_for(key,
  shard_count)` picks the shard that owns a key.
- `rollblock.planning`: `plan_block_delta`, `plan_replay_delta`, `commit_block`
  and `revert_block`. These take an optional `concurrent.futures.Executor` for
  applying shards in parallel.
- `rollblock.engine`: `StateEngine` (abstract) and `ShardedStateEngine`. The
  engine plans a block with `prepare_journal`, applies it with `commit`, undoes
  it with `revert`, reads with `lookup`, and re-applies a journaled block with
  `apply_replayed_block`.
- `rollblock.metrics`: `StoreMetrics` counts applies, rollbacks, lookups,
  failures and checksum errors. It gives a `MetricsSnapshot` with averages and
  p50/p95/p99 figures over the last 100 applies and rollbacks. It also gives a
  `HealthStatus`, whose `HealthState` is `HEALTHY`, `IDLE`, `DEGRADED` or
  `UNHEALTHY`. Durations may be `timedelta`s or seconds.
- `rollblock.durability`: `DurabilityMode.synchronous()` and
  `DurabilityMode.asynchronous(max_pending_blocks)`. The default is asynchronous
  with 1024 pending blocks. `PersistenceSettings(durability_mode,
  snapshot_interval)` has a default interval of one hour.
- `rollblock.task`, `rollblock.pending_blocks`, `rollblock.queue`: the
  persistence work item (`PersistenceTask`, `TaskStatus`,
  `ApplyMetricsContext`), the stack of not-yet-durable undo records
  (`PendingBlocks`), and the bounded, stoppable `PersistenceQueue`.
- `rollblock.persistence`: `PersistenceRuntime` runs one background thread that
  journals queued blocks and a second that takes periodic snapshots.
  `PersistenceContext` holds the durable, applied and rollback-barrier heights.
- `rollblock.orchestrator`: the abstract `BlockOrchestrator` and
  `ReadOnlyBlockOrchestrator`. The read-only orchestrator serves `fetch` and
  raises `ReadOnlyOperation` on `apply_operations` and `revert_to`.
- `rollblock.default_orchestrator`: `DefaultBlockOrchestrator` applies blocks,
  persists them inline or in the background, and rolls back with `revert_to`.
- `rollblock.errors`: every error derives from `StoreError`. Examples are
  `NoShardsConfigured`, `BlockDeltaMismatch`, `InvalidShardIndex`,
  `BlockIdNotIncreasing`, `RollbackTargetAhead`, `DurabilityFailure` and
  `ReadOnlyOperation`.

## Example

```python
from rollblock.engine import ShardedStateEngine
from rollblock.raw_table import RawTableShard
from rollblock.types import Operation

shards = [RawTableShard(i, 16) for i in range(4)]
engine = ShardedStateEngine(shards, metadata=None, thread_pool=None)

key = bytes([7] * 8)
delta = engine.prepare_journal(1, [Operation(key, 5), Operation(key, 9)])
stats, undo = engine.commit(1, delta)
assert engine.lookup(key) == 9
assert stats.operation_count == 2

engine.revert(1, undo)
assert engine.lookup(key) is None
```

## What the package does not provide

The package has no on-disk journal, metadata store or snapshot writer, and no
command-line tool. `DefaultBlockOrchestrator` and `ReadOnlyBlockOrchestrator`
work with objects you supply. Those objects must have these methods:

- journal: `append(block_height, undo, operations)` returns a `JournalMeta`.
  Also `truncate_after(block)`, and `iter_backwards(start, end)`, which yields
  entries that have `block_height` and `undo`, from `start` down to `end`.
- metadata: `current_block()`, `set_current_block(block)`,
  `record_block_commit(block, meta)`,
  `last_journal_offset_at_or_before(block)` (returns a `JournalMeta` or `None`),
  `get_journal_offsets(start, end)` and `remove_journal_offsets_after(block)`.
  The read-only orchestrator needs only `current_block()`.
- snapshotter: `create_snapshot(block, shards)` and
  `prune_snapshots_after(block)`.

## Running the tests

```
pip install -e .[test]
pytest
```
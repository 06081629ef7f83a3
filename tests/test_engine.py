from concurrent.futures import ThreadPoolExecutor

import pytest

from rollblock.engine import ShardedStateEngine
from rollblock.errors import BlockDeltaMismatch, InvalidShardIndex, NoShardsConfigured
from rollblock.raw_table import RawTableShard
from rollblock.types import (
    BlockDelta,
    BlockUndo,
    Operation,
    ShardDelta,
    ShardOp,
    ShardUndo,
    UndoOp,
)


class MemoryMetadataStore:
    def __init__(self):
        self.current = 0
        self.offsets = {}


def op(key, value):
    return Operation(key, value)


def single_shard_engine():
    shard = RawTableShard(0, 8)
    return ShardedStateEngine([shard], MemoryMetadataStore()), shard


def wide_key(i):
    return bytes(
        [i & 0xFF, (i >> 8) & 0xFF, (i >> 16) & 0xFF, (i >> 24) & 0xFF, 0, 0, 0, i & 0xFF]
    )


def test_prepare_journal_requires_shards():
    engine = ShardedStateEngine([], MemoryMetadataStore())
    with pytest.raises(NoShardsConfigured):
        engine.prepare_journal(1, [])


def test_prepare_journal_collects_expected_undo_entries():
    shard = RawTableShard(0, 8)
    shard.apply([ShardOp(bytes([1] * 8), 3)])
    engine = ShardedStateEngine([shard], MemoryMetadataStore())
    key = bytes([1] * 8)

    delta = engine.prepare_journal(2, [op(key, 10), op(key, 0)])
    assert delta.block_height == 2
    assert len(delta.shards) == 1

    shard_delta = delta.shards[0]
    assert len(shard_delta.operations) == 2
    assert len(shard_delta.undo_entries) == 2
    assert shard_delta.undo_entries[0].previous == 3
    assert shard_delta.undo_entries[0].op is UndoOp.UPDATED
    assert shard_delta.undo_entries[1].previous == 10
    assert shard_delta.undo_entries[1].op is UndoOp.DELETED


def test_commit_and_revert_round_trip():
    engine, _ = single_shard_engine()
    key = bytes([7] * 8)

    delta = engine.prepare_journal(1, [op(key, 5), op(key, 9)])
    stats, undo = engine.commit(1, delta)

    assert stats.operation_count == 2
    assert stats.modified_keys == 2
    assert engine.lookup(key) == 9
    assert undo.block_height == 1
    assert len(undo.shard_undos) == 1
    assert len(undo.shard_undos[0].entries) == 2

    engine.revert(1, undo)
    assert engine.lookup(key) is None


def test_shard_index_for_key_reference_distribution():
    shards = [RawTableShard(index, 8) for index in range(4)]
    engine = ShardedStateEngine(shards, MemoryMetadataStore())
    assert engine.shard_index_for_key(bytes(8)) == 3
    assert engine.shard_count() == 4


def test_commit_handles_noop_operations():
    engine, _ = single_shard_engine()
    key = bytes([2] * 8)

    delta = engine.prepare_journal(5, [op(key, 0)])
    stats, undo = engine.commit(5, delta)

    assert stats.operation_count == 1
    assert stats.modified_keys == 0
    assert undo.shard_undos == []
    assert engine.lookup(key) is None


def test_commit_block_height_mismatch_errors():
    engine, _ = single_shard_engine()
    with pytest.raises(BlockDeltaMismatch) as info:
        engine.commit(2, BlockDelta(3, []))
    assert (info.value.expected, info.value.found) == (2, 3)


def test_revert_block_height_mismatch_errors():
    engine, _ = single_shard_engine()
    with pytest.raises(BlockDeltaMismatch) as info:
        engine.revert(1, BlockUndo(4, []))
    assert (info.value.expected, info.value.found) == (1, 4)


def test_commit_errors_on_invalid_shard_index():
    engine, _ = single_shard_engine()
    key = bytes([9] * 8)
    delta = BlockDelta(1, [ShardDelta(5, [ShardOp(key, 1)], [])])
    with pytest.raises(InvalidShardIndex) as info:
        engine.commit(1, delta)
    assert (info.value.shard_index, info.value.shard_count) == (5, 1)


def test_revert_errors_on_invalid_shard_index():
    engine, _ = single_shard_engine()
    undo = BlockUndo(1, [ShardUndo(3, [])])
    with pytest.raises(InvalidShardIndex) as info:
        engine.revert(1, undo)
    assert (info.value.shard_index, info.value.shard_count) == (3, 1)


def test_lookup_without_shards_returns_none():
    engine = ShardedStateEngine([], MemoryMetadataStore())
    key = bytes([1] * 8)
    assert engine.lookup(key) is None
    assert engine.shard_index_for_key(key) is None


def test_commit_without_shards_errors():
    engine = ShardedStateEngine([], MemoryMetadataStore())
    with pytest.raises(NoShardsConfigured):
        engine.commit(1, BlockDelta(1, []))


def test_revert_without_shards_errors():
    engine = ShardedStateEngine([], MemoryMetadataStore())
    with pytest.raises(NoShardsConfigured):
        engine.revert(1, BlockUndo(1, []))


def test_commit_and_revert_with_thread_pool():
    shards = [RawTableShard(index, 32) for index in range(4)]
    with ThreadPoolExecutor(max_workers=2) as pool:
        engine = ShardedStateEngine(shards, MemoryMetadataStore(), pool)
        ops = [op(wide_key(i), i) for i in range(64)]

        delta = engine.prepare_journal(1, ops)
        stats, undo = engine.commit(1, delta)
        assert stats.operation_count == len(ops)
        zero_deletes = sum(1 for o in ops if o.value == 0)
        assert stats.modified_keys == len(ops) - zero_deletes

        for i in (0, 1, 10, 63):
            expected = None if i == 0 else i
            assert engine.lookup(wide_key(i)) == expected

        engine.revert(1, undo)
        for i in (0, 1, 10, 63):
            assert engine.lookup(wide_key(i)) is None


def test_total_keys_sums_over_shards():
    shards = [RawTableShard(index, 8) for index in range(3)]
    engine = ShardedStateEngine(shards, MemoryMetadataStore())
    ops = [op(wide_key(i), i + 1) for i in range(10)]
    engine.commit(1, engine.prepare_journal(1, ops))
    assert engine.total_keys() == 10
    assert sum(shard.stats().keys for shard in engine.snapshot_shards()) == 10


def test_snapshot_shards_returns_configured_shards():
    shards = [RawTableShard(index, 8) for index in range(2)]
    engine = ShardedStateEngine(shards, MemoryMetadataStore())
    snapshot = engine.snapshot_shards()
    assert snapshot == shards
    snapshot.clear()
    assert engine.shard_count() == 2


def test_apply_replayed_block_restores_state():
    source = ShardedStateEngine([RawTableShard(i, 8) for i in range(2)], MemoryMetadataStore())
    ops = [op(wide_key(i), i + 100) for i in range(8)]
    _, undo = source.commit(4, source.prepare_journal(4, ops))

    replica = ShardedStateEngine([RawTableShard(i, 8) for i in range(2)], MemoryMetadataStore())
    replica.apply_replayed_block(4, ops, undo)
    for i in range(8):
        assert replica.lookup(wide_key(i)) == i + 100

    replica.revert(4, undo)
    assert replica.total_keys() == 0


def test_apply_replayed_block_empty_operations_is_noop():
    engine, _ = single_shard_engine()
    engine.apply_replayed_block(3, [], BlockUndo(3, []))
    assert engine.total_keys() == 0


def test_apply_replayed_block_height_mismatch():
    engine, _ = single_shard_engine()
    with pytest.raises(BlockDeltaMismatch) as info:
        engine.apply_replayed_block(2, [op(bytes([1] * 8), 1)], BlockUndo(7, []))
    assert (info.value.expected, info.value.found) == (2, 7)


def test_apply_replayed_block_without_shards_errors():
    engine = ShardedStateEngine([], MemoryMetadataStore())
    with pytest.raises(NoShardsConfigured):
        engine.apply_replayed_block(1, [op(bytes([1] * 8), 1)], BlockUndo(1, []))
from concurrent.futures import ThreadPoolExecutor

import pytest

from rollblock.errors import BlockDeltaMismatch, InvalidShardIndex, NoShardsConfigured
from rollblock.hashing import shard_index_for
from rollblock.planning import commit_block, plan_block_delta, plan_replay_delta, revert_block
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


def key(n):
    return bytes([n]) * 8


def make_shards(count):
    return [RawTableShard(index, 8) for index in range(count)]


def lookup(shards, k):
    return shards[shard_index_for(k, len(shards))].get(k)


def test_empty_ops_give_empty_delta():
    delta = plan_block_delta(make_shards(2), 4, [])
    assert delta == BlockDelta(4, [])


def test_ops_without_shards_error():
    with pytest.raises(NoShardsConfigured):
        plan_block_delta([], 1, [Operation(key(1), 1)])


def test_plan_collects_expected_undo_entries():
    shards = make_shards(1)
    shards[0].apply([ShardOp(key(1), 3)])
    delta = plan_block_delta(shards, 2, [Operation(key(1), 10), Operation(key(1), 0)])

    assert delta.block_height == 2
    assert len(delta.shards) == 1
    shard_delta = delta.shards[0]
    assert len(shard_delta.operations) == 2
    assert [e.previous for e in shard_delta.undo_entries] == [3, 10]
    assert [e.op for e in shard_delta.undo_entries] == [UndoOp.UPDATED, UndoOp.DELETED]
    assert shards[0].get(key(1)) == 3


def test_plan_skips_undo_for_deleting_missing_key():
    shards = make_shards(1)
    delta = plan_block_delta(shards, 1, [Operation(key(2), 0)])
    assert len(delta.shards[0].operations) == 1
    assert delta.shards[0].undo_entries == []


def test_plan_routes_every_key_to_its_shard():
    shards = make_shards(4)
    ops = [Operation(key(n), n + 1) for n in range(40)]
    delta = plan_block_delta(shards, 1, ops)
    indices = [d.shard_index for d in delta.shards]
    assert indices == sorted(indices)
    assert len(indices) > 1
    assert sum(len(d.operations) for d in delta.shards) == len(ops)
    for shard_delta in delta.shards:
        for op in shard_delta.operations:
            assert shard_index_for(op.key, 4) == shard_delta.shard_index


def test_plan_matches_what_commit_produces():
    shards = make_shards(3)
    ops = [Operation(key(n % 5), n) for n in range(12)]
    delta = plan_block_delta(shards, 1, ops)
    planned = {d.shard_index: d.undo_entries for d in delta.shards if d.undo_entries}
    _, undo = commit_block(shards, None, 1, delta)
    assert {u.shard_index: u.entries for u in undo.shard_undos} == planned


def test_commit_and_revert_round_trip():
    shards = make_shards(1)
    ops = [Operation(key(7), 5), Operation(key(7), 9)]
    delta = plan_block_delta(shards, 1, ops)
    stats, undo = commit_block(shards, None, 1, delta)

    assert stats.operation_count == 2
    assert stats.modified_keys == 2
    assert shards[0].get(key(7)) == 9
    assert undo.block_height == 1
    assert len(undo.shard_undos) == 1
    assert len(undo.shard_undos[0].entries) == 2

    revert_block(shards, None, 1, undo)
    assert shards[0].get(key(7)) is None


def test_commit_noop_delete_has_no_undo():
    shards = make_shards(1)
    delta = plan_block_delta(shards, 5, [Operation(key(2), 0)])
    stats, undo = commit_block(shards, None, 5, delta)
    assert stats.operation_count == 1
    assert stats.modified_keys == 0
    assert undo.shard_undos == []


def test_commit_block_height_mismatch():
    with pytest.raises(BlockDeltaMismatch) as info:
        commit_block(make_shards(1), None, 2, BlockDelta(3, []))
    assert (info.value.expected, info.value.found) == (2, 3)


def test_revert_block_height_mismatch():
    with pytest.raises(BlockDeltaMismatch) as info:
        revert_block(make_shards(1), None, 1, BlockUndo(4, []))
    assert (info.value.expected, info.value.found) == (1, 4)


def test_commit_invalid_shard_index():
    delta = BlockDelta(1, [ShardDelta(5, [ShardOp(key(9), 1)], [])])
    with pytest.raises(InvalidShardIndex) as info:
        commit_block(make_shards(1), None, 1, delta)
    assert (info.value.shard_index, info.value.shard_count) == (5, 1)


def test_commit_error_still_applies_other_shards():
    shards = make_shards(1)
    delta = BlockDelta(
        1,
        [ShardDelta(5, [ShardOp(key(9), 1)], []), ShardDelta(0, [ShardOp(key(3), 4)], [])],
    )
    with pytest.raises(InvalidShardIndex):
        commit_block(shards, None, 1, delta)
    assert shards[0].get(key(3)) == 4


def test_revert_invalid_shard_index():
    undo = BlockUndo(1, [ShardUndo(3, [])])
    with pytest.raises(InvalidShardIndex) as info:
        revert_block(make_shards(1), None, 1, undo)
    assert (info.value.shard_index, info.value.shard_count) == (3, 1)


def test_commit_and_revert_with_executor():
    shards = make_shards(4)
    ops = [Operation(bytes([n, 0, 0, 0, 0, 0, 0, n]), n) for n in range(64)]
    with ThreadPoolExecutor(max_workers=2) as pool:
        delta = plan_block_delta(shards, 1, ops)
        stats, undo = commit_block(shards, pool, 1, delta)
        assert stats.operation_count == len(ops)
        assert stats.modified_keys == len(ops) - 1
        for n in (0, 1, 10, 63):
            expected = None if n == 0 else n
            assert lookup(shards, bytes([n, 0, 0, 0, 0, 0, 0, n])) == expected

        revert_block(shards, pool, 1, undo)
    assert sum(shard.stats().keys for shard in shards) == 0


def test_replay_of_no_operations_is_none():
    assert plan_replay_delta(1, [], BlockUndo(1, []), lambda k: 0) is None


def test_replay_groups_operations_and_copies_undo():
    shards = make_shards(3)
    ops = [Operation(key(n), n + 1) for n in range(10)]
    planned = plan_block_delta(shards, 2, ops)
    _, undo = commit_block(shards, None, 2, planned)
    revert_block(shards, None, 2, undo)

    replay = plan_replay_delta(2, ops, undo, lambda k: shard_index_for(k, 3))
    assert replay.block_height == 2
    assert [d.shard_index for d in replay.shards] == [d.shard_index for d in planned.shards]
    for replayed, original in zip(replay.shards, planned.shards):
        assert replayed.operations == original.operations
        assert replayed.undo_entries == original.undo_entries


def test_replay_propagates_routing_error():
    def no_shards(_key):
        raise NoShardsConfigured()

    with pytest.raises(NoShardsConfigured):
        plan_replay_delta(1, [Operation(key(1), 1)], BlockUndo(1, []), no_shards)
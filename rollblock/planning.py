"""Planning, committing and reverting block deltas across shards."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import Executor
from typing import TypeVar

from rollblock.errors import BlockDeltaMismatch, InvalidShardIndex, StoreError
from rollblock.hashing import shard_index_for
from rollblock.types import (
    BlockDelta,
    BlockId,
    BlockUndo,
    Key,
    Operation,
    ShardDelta,
    ShardOp,
    ShardUndo,
    StateShard,
    StateStats,
    UndoEntry,
    UndoOp,
    Value,
)

_T = TypeVar("_T")
_R = TypeVar("_R")


def plan_block_delta(
    shards: Sequence[StateShard], block_height: BlockId, ops: Sequence[Operation]
) -> BlockDelta:
    """Route operations to shards and predict the undo entries they will produce."""
    if not ops:
        return BlockDelta(block_height, [])

    deltas = [ShardDelta(index) for index in range(len(shards))]
    planned: list[dict[Key, Value | None]] = [{} for _ in shards]

    for op in ops:
        index = shard_index_for(op.key, len(shards))
        shard = shards[index]
        delta = deltas[index]
        plan = planned[index]
        delta.operations.append(ShardOp(op.key, op.value))

        previous = plan[op.key] if op.key in plan else shard.get(op.key)

        if op.is_delete():
            if previous is not None:
                delta.undo_entries.append(UndoEntry(op.key, previous, UndoOp.DELETED))
            plan[op.key] = None
        else:
            undo_op = UndoOp.UPDATED if previous is not None else UndoOp.INSERTED
            delta.undo_entries.append(UndoEntry(op.key, previous, undo_op))
            plan[op.key] = op.value

    return BlockDelta(block_height, [delta for delta in deltas if delta.operations])


def plan_replay_delta(
    block_height: BlockId,
    operations: Sequence[Operation],
    undo: BlockUndo,
    shard_for_key: Callable[[Key], int],
) -> BlockDelta | None:
    """Rebuild a block delta from journaled operations and their recorded undo."""
    if not operations:
        return None

    deltas: dict[int, ShardDelta] = {}
    for op in operations:
        index = shard_for_key(op.key)
        delta = deltas.setdefault(index, ShardDelta(index))
        delta.operations.append(ShardOp(op.key, op.value))

    undo_lookup = {shard_undo.shard_index: shard_undo for shard_undo in undo.shard_undos}
    for index, delta in deltas.items():
        if index in undo_lookup:
            delta.undo_entries = list(undo_lookup[index].entries)

    if not deltas:
        return None
    return BlockDelta(block_height, [deltas[index] for index in sorted(deltas)])


def _run_all(
    executor: Executor | None, func: Callable[[_T], _R], items: Sequence[_T]
) -> list[tuple[_R | None, StoreError | None]]:
    """Run ``func`` on every item, collecting results and errors in order."""

    def guarded(item: _T) -> tuple[_R | None, StoreError | None]:
        try:
            return func(item), None
        except StoreError as exc:
            return None, exc

    if executor is None:
        return [guarded(item) for item in items]
    return list(executor.map(guarded, items))


def _shard_at(shards: Sequence[StateShard], index: int) -> StateShard:
    if not 0 <= index < len(shards):
        raise InvalidShardIndex(shard_index=index, shard_count=len(shards))
    return shards[index]


def commit_block(
    shards: Sequence[StateShard],
    executor: Executor | None,
    block_height: BlockId,
    delta: BlockDelta,
) -> tuple[StateStats, BlockUndo]:
    """Apply a planned delta to its shards, optionally in parallel."""
    if delta.block_height != block_height:
        raise BlockDeltaMismatch(expected=block_height, found=delta.block_height)

    def commit_shard(shard_delta: ShardDelta) -> tuple[int, int, ShardUndo | None]:
        shard = _shard_at(shards, shard_delta.shard_index)
        shard_undo = shard.apply(shard_delta.operations)
        ops_count = len(shard_delta.operations)
        if not shard_undo.entries:
            return ops_count, 0, None
        shard_undo.shard_index = shard_delta.shard_index
        return ops_count, len(shard_undo.entries), shard_undo

    total_ops = 0
    modified_keys = 0
    block_undo = BlockUndo(block_height, [])
    for result, error in _run_all(executor, commit_shard, delta.shards):
        if error is not None:
            raise error
        ops_count, keys, shard_undo = result
        total_ops += ops_count
        modified_keys += keys
        if shard_undo is not None:
            block_undo.shard_undos.append(shard_undo)

    return StateStats(operation_count=total_ops, modified_keys=modified_keys), block_undo


def revert_block(
    shards: Sequence[StateShard],
    executor: Executor | None,
    block_height: BlockId,
    undo: BlockUndo,
) -> None:
    """Undo a committed block on every shard it touched."""
    if undo.block_height != block_height:
        raise BlockDeltaMismatch(expected=block_height, found=undo.block_height)

    def revert_shard(shard_undo: ShardUndo) -> None:
        _shard_at(shards, shard_undo.shard_index).revert(shard_undo)

    for _, error in _run_all(executor, revert_shard, undo.shard_undos):
        if error is not None:
            raise error
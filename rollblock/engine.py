"""State engines that spread keys over shards and commit or revert whole blocks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from concurrent.futures import Executor
from typing import Any

from rollblock.errors import BlockDeltaMismatch, NoShardsConfigured
from rollblock.hashing import SHARD_HASH_VERSION, shard_hash
from rollblock.planning import (
    commit_block,
    plan_block_delta,
    plan_replay_delta,
    revert_block,
)
from rollblock.types import (
    BlockDelta,
    BlockId,
    BlockUndo,
    Key,
    Operation,
    StateShard,
    StateStats,
    Value,
)

__all__ = ["SHARD_HASH_VERSION", "ShardedStateEngine", "StateEngine"]


class StateEngine(ABC):
    """Applies blocks of operations to in-memory state and undoes them."""

    @abstractmethod
    def prepare_journal(self, block_height: BlockId, ops: Sequence[Operation]) -> BlockDelta:
        """Plan the changes a block will make, including their undo entries."""

    @abstractmethod
    def commit(self, block_height: BlockId, delta: BlockDelta) -> tuple[StateStats, BlockUndo]:
        """Apply a planned delta and return its statistics and undo record."""

    @abstractmethod
    def revert(self, block_height: BlockId, undo: BlockUndo) -> None:
        """Undo a committed block."""

    @abstractmethod
    def lookup(self, key: Key) -> Value | None:
        """Return the value stored under ``key``, or None."""

    @abstractmethod
    def snapshot_shards(self) -> list[StateShard]:
        """Return the shards that hold the state."""

    def total_keys(self) -> int:
        """Return the number of keys held across all shards."""
        return sum(shard.stats().keys for shard in self.snapshot_shards())


class ShardedStateEngine(StateEngine):
    """A state engine that routes each key to one shard by its keyed hash."""

    def __init__(
        self,
        shards: Sequence[StateShard],
        metadata: Any = None,
        thread_pool: Executor | None = None,
    ) -> None:
        self._shards: list[StateShard] = list(shards)
        self._metadata = metadata
        self._thread_pool = thread_pool

    def shard_count(self) -> int:
        return len(self._shards)

    def shard_index_for_key(self, key: Key) -> int | None:
        """Return the index of the shard owning ``key``, or None without shards."""
        if not self._shards:
            return None
        return shard_hash(key) % len(self._shards)

    def _shard_for_key(self, key: Key) -> StateShard | None:
        index = self.shard_index_for_key(key)
        return None if index is None else self._shards[index]

    def _require_shards(self) -> None:
        if not self._shards:
            raise NoShardsConfigured()

    def apply_replayed_block(
        self, block_height: BlockId, operations: Sequence[Operation], undo: BlockUndo
    ) -> None:
        """Re-apply a journaled block, reusing the undo entries recorded for it."""
        self._require_shards()
        if undo.block_height != block_height:
            raise BlockDeltaMismatch(expected=block_height, found=undo.block_height)

        def route(key: Key) -> int:
            index = self.shard_index_for_key(key)
            if index is None:
                raise NoShardsConfigured()
            return index

        delta = plan_replay_delta(block_height, operations, undo, route)
        if delta is not None:
            self.commit(block_height, delta)

    def total_keys(self) -> int:
        return sum(shard.stats().keys for shard in self._shards)

    def prepare_journal(self, block_height: BlockId, ops: Sequence[Operation]) -> BlockDelta:
        self._require_shards()
        return plan_block_delta(self._shards, block_height, ops)

    def commit(self, block_height: BlockId, delta: BlockDelta) -> tuple[StateStats, BlockUndo]:
        self._require_shards()
        return commit_block(self._shards, self._thread_pool, block_height, delta)

    def revert(self, block_height: BlockId, undo: BlockUndo) -> None:
        self._require_shards()
        revert_block(self._shards, self._thread_pool, block_height, undo)

    def lookup(self, key: Key) -> Value | None:
        shard = self._shard_for_key(key)
        return None if shard is None else shard.get(key)

    def snapshot_shards(self) -> list[StateShard]:
        return list(self._shards)
"""Exceptions raised by the store."""

from __future__ import annotations


class StoreError(Exception):
    """Base class for every error raised by the store."""


class NoShardsConfigured(StoreError):
    """The state engine was asked to work without any shard."""

    def __init__(self) -> None:
        super().__init__("no shards configured")


class BlockDeltaMismatch(StoreError):
    """A delta or undo record belongs to a different block than expected."""

    def __init__(self, expected: int, found: int) -> None:
        self.expected = expected
        self.found = found
        super().__init__(
            f"block delta mismatch: expected block {expected}, found {found}"
        )


class InvalidShardIndex(StoreError):
    """A shard index points outside the configured shards."""

    def __init__(self, shard_index: int, shard_count: int) -> None:
        self.shard_index = shard_index
        self.shard_count = shard_count
        super().__init__(
            f"invalid shard index {shard_index} (shard count {shard_count})"
        )


class InvalidBlockRange(StoreError):
    """A block range whose start lies after its end."""

    def __init__(self, start: int, end: int) -> None:
        self.start = start
        self.end = end
        super().__init__(f"invalid block range {start}..={end}")


class DurabilityFailure(StoreError):
    """A block could not be made durable; the store refuses further work."""

    def __init__(self, block: int, reason: str) -> None:
        self.block = block
        self.reason = reason
        super().__init__(f"durability failure at block {block}: {reason}")


class BlockIdNotIncreasing(StoreError):
    """A block was applied at a height not above the current one."""

    def __init__(self, block_height: int, current: int) -> None:
        self.block_height = block_height
        self.current = current
        super().__init__(
            f"block height {block_height} is not above current block {current}"
        )


class RollbackTargetAhead(StoreError):
    """A rollback was requested to a block above the applied height."""

    def __init__(self, target: int, current: int) -> None:
        self.target = target
        self.current = current
        super().__init__(
            f"rollback target {target} is ahead of current block {current}"
        )


class ReadOnlyOperation(StoreError):
    """A mutating operation was attempted on a read-only store."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"operation '{operation}' is not allowed in read-only mode")
"""Core value types and the shard interface."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

Key = bytes
Value = int
BlockId = int

KEY_LEN = 8
MAX_VALUE = (1 << 64) - 1


def _check_key(key) -> bytes:
    if isinstance(key, int):
        raise TypeError("a key must be a sequence of bytes, not an integer")
    key = bytes(key)
    if len(key) != KEY_LEN:
        raise ValueError(f"a key must be {KEY_LEN} bytes long, got {len(key)}")
    return key


def _check_value(value: int) -> int:
    if not 0 <= value <= MAX_VALUE:
        raise ValueError(f"value {value} does not fit in 64 unsigned bits")
    return value


@dataclass(frozen=True)
class Operation:
    """A write of ``value`` under ``key``; a zero value deletes the key."""

    key: Key
    value: Value

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", _check_key(self.key))
        object.__setattr__(self, "value", _check_value(self.value))

    def is_delete(self) -> bool:
        return self.value == 0


@dataclass(frozen=True)
class ShardOp:
    """An operation routed to one shard."""

    key: Key
    value: Value

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", _check_key(self.key))
        object.__setattr__(self, "value", _check_value(self.value))

    def is_delete(self) -> bool:
        return self.value == 0


class UndoOp(enum.Enum):
    """What a shard did to a key, so it can be undone."""

    INSERTED = "inserted"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class UndoEntry:
    """One undo step: the key, its previous value, and the change made."""

    key: Key
    previous: Value | None
    op: UndoOp

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", _check_key(self.key))


@dataclass
class ShardUndo:
    shard_index: int
    entries: list[UndoEntry] = field(default_factory=list)


@dataclass
class BlockUndo:
    block_height: BlockId
    shard_undos: list[ShardUndo] = field(default_factory=list)


@dataclass
class ShardDelta:
    shard_index: int
    operations: list[ShardOp] = field(default_factory=list)
    undo_entries: list[UndoEntry] = field(default_factory=list)


@dataclass
class BlockDelta:
    block_height: BlockId
    shards: list[ShardDelta] = field(default_factory=list)


@dataclass(frozen=True)
class StateStats:
    operation_count: int
    modified_keys: int


@dataclass(frozen=True)
class ShardStats:
    keys: int
    tombstones: int = 0


@dataclass(frozen=True)
class JournalMeta:
    """Where a block's journal entry lives."""

    block_height: BlockId
    offset: int = 0
    length: int = 0


class StateShard(ABC):
    """A partition of the key-value state that can apply and revert changes."""

    @abstractmethod
    def apply(self, ops: Iterable[ShardOp]) -> ShardUndo:
        """Apply operations in order and return what undoes them."""

    @abstractmethod
    def revert(self, undo: ShardUndo) -> None:
        """Undo the changes described by ``undo``."""

    @abstractmethod
    def get(self, key: Key) -> Value | None:
        """Return the value stored under ``key``, or None."""

    @abstractmethod
    def stats(self) -> ShardStats:
        """Return counters describing the shard."""

    @abstractmethod
    def export_data(self) -> list[tuple[Key, Value]]:
        """Return every key-value pair held by the shard."""

    def visit_entries(self, visitor: Callable[[Key, Value], None]) -> None:
        """Call ``visitor`` with every key-value pair."""
        for key, value in self.export_data():
            visitor(key, value)

    @abstractmethod
    def import_data(self, data: Iterable[tuple[Key, Value]]) -> None:
        """Replace the shard's contents with ``data``."""
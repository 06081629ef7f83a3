"""In-memory hash-table shard."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable

from rollblock.types import (
    Key,
    ShardOp,
    ShardStats,
    ShardUndo,
    StateShard,
    UndoEntry,
    UndoOp,
    Value,
    _check_key,
)


class RawTableShard(StateShard):
    """A shard that keeps its keys in a dictionary guarded by a lock."""

    def __init__(self, shard_index: int = 0, capacity: int = 0) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self._shard_index = shard_index
        self._table: dict[Key, Value] = {}
        self._lock = threading.RLock()

    @property
    def shard_index(self) -> int:
        return self._shard_index

    def apply(self, ops: Iterable[ShardOp]) -> ShardUndo:
        entries: list[UndoEntry] = []
        with self._lock:
            table = self._table
            for op in ops:
                if op.is_delete():
                    previous = table.pop(op.key, None)
                    if previous is not None:
                        entries.append(UndoEntry(op.key, previous, UndoOp.DELETED))
                elif op.key in table:
                    previous = table[op.key]
                    table[op.key] = op.value
                    entries.append(UndoEntry(op.key, previous, UndoOp.UPDATED))
                else:
                    table[op.key] = op.value
                    entries.append(UndoEntry(op.key, None, UndoOp.INSERTED))
        return ShardUndo(self._shard_index, entries)

    def revert(self, undo: ShardUndo) -> None:
        with self._lock:
            table = self._table
            for entry in reversed(undo.entries):
                if entry.op is UndoOp.INSERTED:
                    table.pop(entry.key, None)
                elif entry.op is UndoOp.UPDATED:
                    if entry.previous is None:
                        table.pop(entry.key, None)
                    else:
                        table[entry.key] = entry.previous
                elif entry.previous is not None:
                    table[entry.key] = entry.previous

    def get(self, key: Key) -> Value | None:
        key = _check_key(key)
        with self._lock:
            return self._table.get(key)

    def stats(self) -> ShardStats:
        with self._lock:
            return ShardStats(keys=len(self._table), tombstones=0)

    def export_data(self) -> list[tuple[Key, Value]]:
        with self._lock:
            return list(self._table.items())

    def visit_entries(self, visitor: Callable[[Key, Value], None]) -> None:
        with self._lock:
            for key, value in self._table.items():
                visitor(key, value)

    def import_data(self, data: Iterable[tuple[Key, Value]]) -> None:
        with self._lock:
            self._table = {_check_key(key): value for key, value in data}
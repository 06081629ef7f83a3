"""Undo records of blocks applied in memory but not yet durable."""

from __future__ import annotations

import threading
from collections import deque

from rollblock.types import BlockId, BlockUndo


class PendingBlocks:
    """A thread-safe stack of undo records, oldest block first."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._undos: deque[BlockUndo] = deque()

    def push(self, undo: BlockUndo) -> None:
        with self._lock:
            self._undos.append(undo)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._undos

    def __len__(self) -> int:
        with self._lock:
            return len(self._undos)

    def pop_latest(self, block_height: BlockId) -> BlockUndo | None:
        """Remove the newest record if it belongs to ``block_height``."""
        with self._lock:
            if self._undos and self._undos[-1].block_height == block_height:
                return self._undos.pop()
            return None

    def pop_until(self, target: BlockId) -> list[BlockUndo]:
        """Remove every record above ``target``, newest first."""
        removed: list[BlockUndo] = []
        with self._lock:
            while self._undos and self._undos[-1].block_height > target:
                removed.append(self._undos.pop())
        return removed

    def pop_front(self, block_height: BlockId) -> BlockUndo | None:
        """Remove the oldest record if it belongs to ``block_height``."""
        with self._lock:
            if self._undos and self._undos[0].block_height == block_height:
                return self._undos.popleft()
            return None

    def drain(self) -> list[BlockUndo]:
        """Remove and return every record, oldest first."""
        with self._lock:
            drained = list(self._undos)
            self._undos.clear()
        return drained
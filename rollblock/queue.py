"""Bounded queue of persistence tasks."""

from __future__ import annotations

import threading
from collections import deque

from rollblock.errors import DurabilityFailure
from rollblock.task import PersistenceTask
from rollblock.types import BlockId


class PersistenceQueue:
    """A bounded multi-producer queue that can be stopped."""

    def __init__(self, max_size: int) -> None:
        self._max_size = max(max_size, 1)
        self._tasks: deque[PersistenceTask] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._stopped = False

    @property
    def max_size(self) -> int:
        return self._max_size

    def push(self, task: PersistenceTask) -> None:
        """Queue ``task``, waiting for room; raise if the queue has stopped."""
        with self._lock:
            while len(self._tasks) >= self._max_size and not self._stopped:
                self._not_full.wait()
            if self._stopped:
                task.mark_cancelled()
                raise DurabilityFailure(task.block_height, "persistence runtime has stopped")
            self._tasks.append(task)
            self._not_empty.notify()

    def pop(self) -> PersistenceTask | None:
        """Take the oldest task, waiting for one; None once stopped and empty."""
        with self._lock:
            while True:
                if self._tasks:
                    task = self._tasks.popleft()
                    self._not_full.notify()
                    return task
                if self._stopped:
                    return None
                self._not_empty.wait()

    def is_empty(self) -> bool:
        with self._lock:
            return not self._tasks

    def cancel_after(self, block_height: BlockId) -> list[PersistenceTask]:
        """Remove and cancel queued tasks above ``block_height``, newest first."""
        cancelled: list[PersistenceTask] = []
        with self._lock:
            while self._tasks and self._tasks[-1].block_height > block_height:
                cancelled.append(self._tasks.pop())
            self._not_full.notify_all()
        for task in cancelled:
            task.mark_cancelled()
        return cancelled

    def drain(self) -> list[PersistenceTask]:
        """Remove and return every queued task, oldest first."""
        with self._lock:
            drained = list(self._tasks)
            self._tasks.clear()
            self._not_full.notify_all()
        return drained

    def stop(self) -> None:
        """Refuse new tasks and wake every waiting thread."""
        with self._lock:
            self._stopped = True
            self._not_empty.notify_all()
            self._not_full.notify_all()
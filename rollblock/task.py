"""Work items handed to the persistence runtime."""

from __future__ import annotations

import enum
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from rollblock.errors import StoreError
from rollblock.types import BlockId, BlockUndo, Operation


@dataclass(frozen=True)
class ApplyMetricsContext:
    """What is needed to record an apply's metrics once the block is durable.

    ``started_at`` is a ``time.monotonic()`` reading.
    """

    started_at: float
    ops_count: int
    set_count: int
    zero_delete_count: int

    @classmethod
    def from_ops(cls, started_at: float, ops: Iterable[Operation]) -> ApplyMetricsContext:
        ops = list(ops)
        zero_delete_count = sum(1 for op in ops if op.value == 0)
        return cls(
            started_at=started_at,
            ops_count=len(ops),
            set_count=len(ops) - zero_delete_count,
            zero_delete_count=zero_delete_count,
        )


class TaskStatus(enum.Enum):
    PENDING = "pending"
    PERSISTING = "persisting"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


_FINISHED = (TaskStatus.CANCELLED, TaskStatus.COMPLETED)


class PersistenceTask:
    """A block waiting to be written to the journal."""

    def __init__(
        self,
        block_height: BlockId,
        operations: Sequence[Operation],
        undo: BlockUndo,
        metrics: ApplyMetricsContext,
    ) -> None:
        self.block_height = block_height
        self.operations = list(operations)
        self.undo = undo
        self.metrics = metrics
        self._cancelled = False
        self._status = TaskStatus.PENDING
        self._error: StoreError | None = None
        self._changed = threading.Condition()

    def mark_cancelled(self) -> None:
        """Flag the task as cancelled and wake anyone waiting on it."""
        with self._changed:
            self._cancelled = True
            self._status = TaskStatus.CANCELLED
            self._changed.notify_all()

    def wait_completion(self) -> None:
        """Block until the task finishes; raise the error it completed with, if any."""
        with self._changed:
            self._changed.wait_for(lambda: self._status in _FINISHED)
            if self._status is TaskStatus.COMPLETED and self._error is not None:
                raise self._error

    def set_status(self, status: TaskStatus, error: StoreError | None = None) -> None:
        """Move the task to ``status``; ``error`` only goes with COMPLETED."""
        if error is not None and status is not TaskStatus.COMPLETED:
            raise ValueError("only a completed task can carry an error")
        with self._changed:
            self._status = status
            self._error = error
            self._changed.notify_all()

    def is_cancelled(self) -> bool:
        with self._changed:
            return self._cancelled

    def status(self) -> TaskStatus:
        with self._changed:
            return self._status

    def __repr__(self) -> str:
        return f"PersistenceTask(block_height={self.block_height}, status={self.status().name})"
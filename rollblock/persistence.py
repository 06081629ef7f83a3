"""Background persistence of applied blocks and the bookkeeping around it."""

from __future__ import annotations

import enum
import logging
import queue as _stdqueue
import threading
import time
from datetime import timedelta
from typing import Any

from rollblock.durability import PersistenceSettings
from rollblock.engine import StateEngine
from rollblock.errors import DurabilityFailure, StoreError
from rollblock.metrics import StoreMetrics
from rollblock.pending_blocks import PendingBlocks
from rollblock.queue import PersistenceQueue
from rollblock.task import PersistenceTask, TaskStatus
from rollblock.types import BlockId

logger = logging.getLogger(__name__)

_FLUSH_POLL_SECS = 0.01


class _PersistOutcome(enum.Enum):
    COMMITTED = "committed"
    SKIPPED = "skipped"


class _SnapshotCommand(enum.Enum):
    TRIGGER = "trigger"
    SHUTDOWN = "shutdown"


def _interval_seconds(interval: timedelta | float) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


class BlockHeights:
    """Durable, applied and rollback-barrier heights shared between threads."""

    def __init__(self, initial: BlockId = 0) -> None:
        self.durable: BlockId = initial
        self.applied: BlockId = initial
        self.rollback_barrier: BlockId = initial

    def __repr__(self) -> str:
        return (
            f"BlockHeights(durable={self.durable}, applied={self.applied}, "
            f"rollback_barrier={self.rollback_barrier})"
        )


class PersistenceRuntime:
    """Background workers that journal queued blocks and take periodic snapshots.

    ``journal`` provides ``append(block_height, undo, operations)`` and
    ``truncate_after(block)``; ``metadata`` provides
    ``record_block_commit(block_height, meta)``; ``snapshotter`` provides
    ``create_snapshot(block_height, shards)``.
    """

    def __init__(
        self,
        queue: PersistenceQueue,
        pending_blocks: PendingBlocks,
        state_engine: StateEngine,
        journal: Any,
        snapshotter: Any,
        metadata: Any,
        metrics: StoreMetrics,
        heights: BlockHeights,
        update_mutex: threading.Lock,
        snapshot_interval: timedelta | float,
    ) -> None:
        self._queue = queue
        self._pending_blocks = pending_blocks
        self._state_engine = state_engine
        self._journal = journal
        self._snapshotter = snapshotter
        self._metadata = metadata
        self._metrics = metrics
        self._heights = heights
        self._update_mutex = update_mutex
        self._snapshot_interval = _interval_seconds(snapshot_interval)

        self._fatal_lock = threading.Lock()
        self._fatal: tuple[BlockId, str] | None = None
        self._stop = threading.Event()
        self._flush_cv = threading.Condition()

        self._snapshot_lock = threading.Lock()
        self._snapshot_commands: _stdqueue.SimpleQueue[_SnapshotCommand] = (
            _stdqueue.SimpleQueue()
        )
        self._snapshot_open = True
        self._snapshot_inflight = False
        self._last_snapshot = time.monotonic()

        self._threads_lock = threading.Lock()
        self._worker: threading.Thread | None = threading.Thread(
            target=self._run_worker, name="rollblock-persistence", daemon=True
        )
        self._snapshot_worker: threading.Thread | None = threading.Thread(
            target=self._run_snapshot_worker, name="rollblock-snapshot", daemon=True
        )
        self._worker.start()
        self._snapshot_worker.start()

    # -- public API -----------------------------------------------------

    def enqueue(self, task: PersistenceTask) -> None:
        """Queue a block for persistence; raise if the runtime cannot take it."""
        self.ensure_healthy()
        if self._stop.is_set():
            error = self.fatal_error()
            if error is not None:
                raise error
            raise DurabilityFailure(task.block_height, "persistence runtime is shutting down")
        self._queue.push(task)

    def cancel_after(self, block_height: BlockId) -> list[PersistenceTask]:
        """Cancel queued tasks above ``block_height``, newest first."""
        cancelled = self._queue.cancel_after(block_height)
        if cancelled:
            self._notify_flush()
        return cancelled

    def flush(self) -> None:
        """Wait until every applied block is durable; raise on a fatal error."""
        with self._flush_cv:
            while True:
                error = self.fatal_error()
                if error is not None:
                    raise error
                if self._heights.durable >= self._heights.applied:
                    return
                self._flush_cv.wait(_FLUSH_POLL_SECS)

    def shutdown(self) -> None:
        """Stop both workers and wait for them to finish."""
        self._queue.stop()
        self._stop.set()
        self._notify_flush()
        self._signal_snapshot_shutdown()
        with self._threads_lock:
            workers = [self._worker, self._snapshot_worker]
            self._worker = None
            self._snapshot_worker = None
        current = threading.current_thread()
        for worker in workers:
            if worker is not None and worker is not current:
                worker.join()

    def fatal_error(self) -> DurabilityFailure | None:
        """Return the error that stopped the runtime, if any."""
        with self._fatal_lock:
            if self._fatal is None:
                return None
            block, reason = self._fatal
        return DurabilityFailure(block, reason)

    def ensure_healthy(self) -> None:
        error = self.fatal_error()
        if error is not None:
            raise error

    # -- persistence worker ----------------------------------------------

    def _notify_flush(self) -> None:
        with self._flush_cv:
            self._flush_cv.notify_all()

    def _run_worker(self) -> None:
        while not self._stop.is_set():
            task = self._queue.pop()
            if task is None:
                break

            if task.is_cancelled():
                task.set_status(TaskStatus.CANCELLED)
                self._notify_flush()
                continue

            barrier = self._heights.rollback_barrier
            if task.block_height > barrier:
                logger.debug(
                    "skipping persistence for block %d above rollback barrier %d",
                    task.block_height,
                    barrier,
                )
                self._pending_blocks.pop_front(task.block_height)
                task.set_status(TaskStatus.CANCELLED)
                self._notify_flush()
                continue

            task.set_status(TaskStatus.PERSISTING)
            try:
                outcome = self._persist_block(task)
            except Exception as exc:  # noqa: BLE001 - any failure is fatal to durability
                self._handle_persist_failure(task, exc)
                break

            if outcome is _PersistOutcome.SKIPPED:
                self._revert_skipped(task)
                task.set_status(TaskStatus.CANCELLED)
                self._notify_flush()
                continue

            self._pending_blocks.pop_front(task.block_height)
            self._heights.durable = task.block_height
            self._metrics.update_durable_block(task.block_height)
            context = task.metrics
            self._metrics.record_apply(
                task.block_height,
                context.ops_count,
                context.set_count,
                context.zero_delete_count,
                max(time.monotonic() - context.started_at, 0.0),
            )
            task.set_status(TaskStatus.COMPLETED)
            self._notify_flush()

            if self._stop.is_set():
                break
            self._maybe_request_snapshot()

        self._notify_flush()

    def _persist_block(self, task: PersistenceTask) -> _PersistOutcome:
        meta = self._journal.append(task.block_height, task.undo, task.operations)
        barrier = self._heights.rollback_barrier
        if task.block_height > barrier:
            logger.debug(
                "discarding journal entry for block %d written after barrier moved to %d",
                task.block_height,
                barrier,
            )
            self._journal.truncate_after(barrier)
            return _PersistOutcome.SKIPPED
        self._metadata.record_block_commit(task.block_height, meta)
        return _PersistOutcome.COMMITTED

    def _revert_skipped(self, task: PersistenceTask) -> None:
        undo = self._pending_blocks.pop_front(task.block_height)
        if undo is None:
            return
        try:
            self._state_engine.revert(task.block_height, undo)
        except StoreError:
            logger.exception(
                "failed to revert skipped block %d after rollback barrier moved",
                task.block_height,
            )
        else:
            logger.debug(
                "reverted skipped block %d after rollback barrier moved", task.block_height
            )

    def _handle_persist_failure(self, task: PersistenceTask, exc: Exception) -> None:
        block = task.block_height
        reason = str(exc)
        logger.error("durability failure while persisting block %d: %s", block, reason)

        self._metrics.record_failure()
        with self._fatal_lock:
            if self._fatal is None:
                self._fatal = (block, reason)

        self._pending_blocks.pop_front(block)
        try:
            self._state_engine.revert(block, task.undo)
        except StoreError:
            logger.exception("failed to revert block %d after durability failure", block)

        error = exc if isinstance(exc, StoreError) else DurabilityFailure(block, reason)
        task.set_status(TaskStatus.COMPLETED, error)

        for undo in reversed(self._pending_blocks.drain()):
            try:
                self._state_engine.revert(undo.block_height, undo)
            except StoreError:
                logger.exception(
                    "failed to revert pending block %d after durability failure",
                    undo.block_height,
                )
            else:
                logger.debug(
                    "reverted pending block %d after durability failure", undo.block_height
                )

        try:
            self._journal.truncate_after(self._heights.durable)
        except Exception:  # noqa: BLE001
            logger.exception("failed to truncate journal after durability failure")

        durable = self._heights.durable
        self._heights.applied = durable
        self._metrics.update_applied_block(durable)
        self._metrics.update_key_count(self._state_engine.total_keys())

        self._queue.stop()
        self._stop.set()
        self._notify_flush()
        self._signal_snapshot_shutdown()

        for pending in self._queue.drain():
            pending.set_status(TaskStatus.COMPLETED, DurabilityFailure(block, reason))

    # -- snapshot worker --------------------------------------------------

    def _run_snapshot_worker(self) -> None:
        while True:
            command = self._snapshot_commands.get()
            if command is _SnapshotCommand.SHUTDOWN:
                break
            try:
                created = self._try_create_snapshot()
            except Exception:  # noqa: BLE001
                logger.warning("failed to create scheduled snapshot", exc_info=True)
                self._metrics.record_failure()
            else:
                if created:
                    with self._snapshot_lock:
                        self._last_snapshot = time.monotonic()
            with self._snapshot_lock:
                self._snapshot_inflight = False

        with self._snapshot_lock:
            self._snapshot_inflight = False

    def _maybe_request_snapshot(self) -> None:
        if self._snapshot_interval <= 0:
            return
        with self._snapshot_lock:
            if self._snapshot_inflight:
                return
        if not self._queue.is_empty() or not self._pending_blocks.is_empty():
            return
        with self._snapshot_lock:
            if time.monotonic() - self._last_snapshot < self._snapshot_interval:
                return
            if self._snapshot_inflight or not self._snapshot_open:
                return
            self._snapshot_inflight = True
            self._snapshot_commands.put(_SnapshotCommand.TRIGGER)

    def _signal_snapshot_shutdown(self) -> None:
        with self._snapshot_lock:
            was_open = self._snapshot_open
            self._snapshot_open = False
        if was_open:
            self._snapshot_commands.put(_SnapshotCommand.SHUTDOWN)

    def _try_create_snapshot(self) -> bool:
        if not self._update_mutex.acquire(blocking=False):
            return False
        try:
            if not self._pending_blocks.is_empty():
                return False
            durable = self._heights.durable
            if durable != self._heights.applied:
                return False
            shards = self._state_engine.snapshot_shards()
            path = self._snapshotter.create_snapshot(durable, shards)
            logger.info("snapshot created at block %d: %s", durable, path)
            return True
        finally:
            self._update_mutex.release()


class PersistenceContext:
    """Persistence state shared between an orchestrator and its background runtime."""

    def __init__(
        self,
        state_engine: StateEngine,
        journal: Any,
        snapshotter: Any,
        metadata: Any,
        update_mutex: threading.Lock,
        settings: PersistenceSettings,
    ) -> None:
        current_block = metadata.current_block()
        self._metrics = StoreMetrics()
        self._metrics.update_key_count(state_engine.total_keys())
        self._metrics.update_durable_block(current_block)
        self._metrics.update_applied_block(current_block)

        self._pending_blocks = PendingBlocks()
        self._heights = BlockHeights(current_block)

        mode = settings.durability_mode
        self._runtime: PersistenceRuntime | None = None
        if mode.is_async():
            self._runtime = PersistenceRuntime(
                PersistenceQueue(mode.max_pending_blocks()),
                self._pending_blocks,
                state_engine,
                journal,
                snapshotter,
                metadata,
                self._metrics,
                self._heights,
                update_mutex,
                settings.snapshot_interval,
            )

    def metrics(self) -> StoreMetrics:
        return self._metrics

    def pending_blocks(self) -> PendingBlocks:
        return self._pending_blocks

    def durable_block_height(self) -> BlockId:
        return self._heights.durable

    def applied_block_height(self) -> BlockId:
        return self._heights.applied

    def set_applied_block(self, block_height: BlockId) -> None:
        self._heights.applied = block_height
        self._metrics.update_applied_block(block_height)

    def set_durable_block(self, block_height: BlockId) -> None:
        self._heights.durable = block_height
        self._metrics.update_durable_block(block_height)

    def rollback_barrier(self) -> BlockId:
        return self._heights.rollback_barrier

    def set_rollback_barrier(self, block_height: BlockId) -> None:
        self._heights.rollback_barrier = block_height

    def update_key_count(self, total_keys: int) -> None:
        self._metrics.update_key_count(total_keys)

    def is_async(self) -> bool:
        return self._runtime is not None

    def enqueue(self, task: PersistenceTask) -> None:
        if self._runtime is None:
            raise DurabilityFailure(task.block_height, "persistence runtime is not initialized")
        self._runtime.enqueue(task)

    def cancel_after(self, block_height: BlockId) -> list[PersistenceTask]:
        if self._runtime is None:
            return []
        return self._runtime.cancel_after(block_height)

    def flush(self) -> None:
        if self._runtime is not None:
            self._runtime.flush()

    def shutdown(self) -> None:
        if self._runtime is not None:
            self._runtime.shutdown()

    def fatal_error(self) -> DurabilityFailure | None:
        if self._runtime is None:
            return None
        return self._runtime.fatal_error()

    def ensure_healthy(self) -> None:
        if self._runtime is not None:
            self._runtime.ensure_healthy()
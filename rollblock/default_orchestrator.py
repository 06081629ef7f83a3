"""The standard read-write orchestrator: applies, persists and rolls back blocks."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from typing import Any

from rollblock.durability import PersistenceSettings
from rollblock.engine import StateEngine
from rollblock.errors import (
    BlockIdNotIncreasing,
    DurabilityFailure,
    RollbackTargetAhead,
    StoreError,
)
from rollblock.metrics import StoreMetrics
from rollblock.orchestrator import BlockOrchestrator
from rollblock.persistence import PersistenceContext
from rollblock.task import ApplyMetricsContext, PersistenceTask
from rollblock.types import BlockId, BlockUndo, Key, Operation, Value

logger = logging.getLogger(__name__)


class DefaultBlockOrchestrator(BlockOrchestrator):
    """Coordinates mutation, durability and rollback of blocks.

    ``journal`` provides ``append(block_height, undo, operations)``,
    ``truncate_after(block)`` and ``iter_backwards(start, end)``, the last
    yielding entries with ``block_height`` and ``undo`` from ``start`` down to
    ``end``. ``metadata`` provides ``current_block()``,
    ``set_current_block(block)``, ``record_block_commit(block, meta)``,
    ``last_journal_offset_at_or_before(block)``,
    ``get_journal_offsets(start, end)`` and
    ``remove_journal_offsets_after(block)``. ``snapshotter`` provides
    ``create_snapshot(block, shards)`` and ``prune_snapshots_after(block)``.
    """

    def __init__(
        self,
        state_engine: StateEngine,
        journal: Any,
        snapshotter: Any,
        metadata: Any,
        persistence_settings: PersistenceSettings | None = None,
    ) -> None:
        settings = persistence_settings if persistence_settings is not None else PersistenceSettings()
        self._state_engine = state_engine
        self._journal = journal
        self._snapshotter = snapshotter
        self._metadata = metadata
        self._update_mutex = threading.Lock()
        self._persistence = PersistenceContext(
            state_engine, journal, snapshotter, metadata, self._update_mutex, settings
        )
        self._fatal_lock = threading.Lock()
        self._fatal: tuple[BlockId, str] | None = None

    # -- health -----------------------------------------------------------

    def _check_health(self) -> None:
        with self._fatal_lock:
            fatal = self._fatal
        if fatal is not None:
            raise DurabilityFailure(*fatal)
        self._persistence.ensure_healthy()

    def _set_fatal_error(self, block: BlockId, reason: str) -> None:
        with self._fatal_lock:
            if self._fatal is None:
                self._fatal = (block, reason)

    def _validate_block_height(self, block_height: BlockId) -> None:
        current_durable = self._metadata.current_block()
        current = max(self._persistence.applied_block_height(), current_durable)
        if block_height <= current:
            self._persistence.metrics().record_failure()
            raise BlockIdNotIncreasing(block_height, current)

    # -- applying -----------------------------------------------------------

    def _enqueue_unlocked(self, task: PersistenceTask) -> None:
        """Enqueue while the update mutex is released, so a full queue cannot deadlock."""
        self._update_mutex.release()
        try:
            self._persistence.enqueue(task)
        finally:
            self._update_mutex.acquire()

    def _record_apply(self, block_height: BlockId, context: ApplyMetricsContext) -> float:
        duration = max(time.monotonic() - context.started_at, 0.0)
        self._persistence.metrics().record_apply(
            block_height,
            context.ops_count,
            context.set_count,
            context.zero_delete_count,
            duration,
        )
        return duration

    def _apply_empty_block(self, block_height: BlockId, context: ApplyMetricsContext) -> None:
        block_undo = BlockUndo(block_height)
        if self._persistence.is_async():
            self._persistence.set_rollback_barrier(block_height)
            self._persistence.pending_blocks().push(block_undo)
            task = PersistenceTask(block_height, [], block_undo, context)
            try:
                self._enqueue_unlocked(task)
            except StoreError:
                self._persistence.pending_blocks().pop_latest(block_height)
                self._persistence.metrics().record_failure()
                raise
            self._persistence.set_applied_block(block_height)
            logger.info("empty block %d queued for asynchronous persistence", block_height)
        else:
            logger.debug("empty block %d, appending synchronous journal entry", block_height)
            try:
                meta = self._journal.append(block_height, block_undo, [])
            except Exception as err:
                self._persistence.metrics().record_failure()
                self._set_fatal_error(block_height, str(err))
                raise
            try:
                self._metadata.record_block_commit(block_height, meta)
            except Exception as err:
                self._persistence.metrics().record_failure()
                self._set_fatal_error(block_height, str(err))
                previous = max(block_height - 1, 0)
                for cleanup in (
                    self._journal.truncate_after,
                    self._metadata.remove_journal_offsets_after,
                ):
                    try:
                        cleanup(previous)
                    except Exception:  # noqa: BLE001 - best-effort cleanup
                        logger.debug("cleanup after failed empty block %d failed", block_height)
                raise
            self._persistence.set_durable_block(block_height)
            self._persistence.set_applied_block(block_height)
            duration = self._record_apply(block_height, context)
            logger.info("empty block %d applied in %.3f ms", block_height, duration * 1000)

        self._persistence.update_key_count(self._state_engine.total_keys())

    def _apply_non_empty_block(
        self, block_height: BlockId, ops: list[Operation], context: ApplyMetricsContext
    ) -> None:
        delta = self._state_engine.prepare_journal(block_height, ops)
        stats, block_undo = self._state_engine.commit(block_height, delta)
        logger.debug(
            "state committed: %d operations, %d modified keys",
            stats.operation_count,
            stats.modified_keys,
        )

        is_async = self._persistence.is_async()
        try:
            if is_async:
                self._persistence.set_rollback_barrier(block_height)
                self._persistence.pending_blocks().push(block_undo)
                task = PersistenceTask(block_height, ops, block_undo, context)
                self._enqueue_unlocked(task)
            else:
                self._persist_synchronously(block_height, block_undo, ops)
        except Exception as err:
            self._handle_persistence_error(block_height, block_undo, err, stats.operation_count)
            raise

        self._persistence.set_applied_block(block_height)
        if not is_async:
            self._record_apply(block_height, context)

        logger.info(
            "block %d applied: %d operations, %d modified keys",
            block_height,
            stats.operation_count,
            stats.modified_keys,
        )
        self._persistence.update_key_count(self._state_engine.total_keys())

    def _persist_synchronously(
        self, block_height: BlockId, block_undo: BlockUndo, ops: list[Operation]
    ) -> None:
        meta = self._journal.append(block_height, block_undo, ops)
        self._metadata.record_block_commit(block_height, meta)
        self._persistence.set_durable_block(block_height)

    def _handle_persistence_error(
        self,
        block_height: BlockId,
        block_undo: BlockUndo,
        err: Exception,
        operation_count: int,
    ) -> None:
        """Undo an in-memory block whose persistence failed; the caller re-raises."""
        self._persistence.metrics().record_failure()
        is_async = self._persistence.is_async()
        if is_async:
            self._persistence.pending_blocks().pop_latest(block_height)
        else:
            self._set_fatal_error(block_height, str(err))

        try:
            self._state_engine.revert(block_height, block_undo)
        except StoreError:
            logger.exception(
                "failed to revert state of block %d after persistence failure", block_height
            )
            if not is_async:
                self._cleanup_after_sync_failure()
            raise

        if not is_async:
            self._cleanup_after_sync_failure()

        logger.error(
            "failed to persist block %d (%d operations), reverted state",
            block_height,
            operation_count,
        )
        self._persistence.update_key_count(self._state_engine.total_keys())

    def _cleanup_after_sync_failure(self) -> None:
        durable = self._persistence.durable_block_height()
        steps = (
            (self._journal.truncate_after, "truncate journal"),
            (self._metadata.remove_journal_offsets_after, "remove metadata offsets"),
            (self._metadata.set_current_block, "reset metadata current block"),
        )
        for step, description in steps:
            try:
                step(durable)
            except Exception:  # noqa: BLE001 - best-effort cleanup
                logger.exception(
                    "failed to %s after synchronous durability failure (durable block %d)",
                    description,
                    durable,
                )
        self._persistence.set_applied_block(durable)

    # -- rollback -----------------------------------------------------------

    def _revert_to_internal(self, block: BlockId) -> None:
        persistence = self._persistence
        current_applied = persistence.applied_block_height()
        if block > current_applied:
            raise RollbackTargetAhead(block, current_applied)

        if persistence.is_async():
            if persistence.durable_block_height() < current_applied:
                persistence.flush()
                current_applied = persistence.applied_block_height()
            persistence.set_rollback_barrier(block)

        if block == current_applied:
            return

        if persistence.is_async():
            cancelled = persistence.cancel_after(block)
            if cancelled:
                logger.debug(
                    "cancelled %d pending persistence tasks above rollback target", len(cancelled)
                )

        for undo in persistence.pending_blocks().pop_until(block):
            logger.debug("reverting pending block %d above rollback target", undo.block_height)
            self._state_engine.revert(undo.block_height, undo)

        current_durable = self._metadata.current_block()
        if block > current_durable:
            persistence.update_key_count(self._state_engine.total_keys())
            persistence.set_applied_block(block)
            return

        meta = self._metadata.last_journal_offset_at_or_before(block)
        actual_target = 0 if meta is None else meta.block_height

        range_start = actual_target + 1
        if range_start <= current_durable:
            offsets = self._metadata.get_journal_offsets(range_start, current_durable)
            if offsets:
                for entry in self._journal.iter_backwards(current_durable, range_start):
                    self._state_engine.revert(entry.block_height, entry.undo)

        self._journal.truncate_after(actual_target)
        self._metadata.remove_journal_offsets_after(actual_target)
        self._metadata.set_current_block(actual_target)
        self._snapshotter.prune_snapshots_after(actual_target)
        persistence.set_durable_block(actual_target)
        persistence.set_applied_block(actual_target)
        persistence.update_key_count(self._state_engine.total_keys())

    # -- public API -----------------------------------------------------------

    def apply_operations(self, block_height: BlockId, ops: Sequence[Operation]) -> None:
        start = time.monotonic()
        ops = list(ops)
        with self._update_mutex:
            self._check_health()
            self._validate_block_height(block_height)
            context = ApplyMetricsContext.from_ops(start, ops)
            if not ops:
                self._apply_empty_block(block_height, context)
            else:
                self._apply_non_empty_block(block_height, ops, context)

    def revert_to(self, block: BlockId) -> None:
        start = time.monotonic()
        with self._update_mutex:
            self._check_health()
            logger.debug("starting rollback to block %d", block)
            try:
                self._revert_to_internal(block)
            except Exception:
                logger.exception("rollback to block %d failed", block)
                self._persistence.metrics().record_failure()
                raise
            duration = max(time.monotonic() - start, 0.0)
            self._persistence.metrics().record_rollback(block, duration)
            logger.info("rollback to block %d completed in %.3f ms", block, duration * 1000)

    def fetch(self, key: Key) -> Value:
        self._check_health()
        start = time.monotonic()
        result = self._state_engine.lookup(key)
        self._persistence.metrics().record_lookup(max(time.monotonic() - start, 0.0))
        return 0 if result is None else result

    def metrics(self) -> StoreMetrics:
        return self._persistence.metrics()

    def current_block(self) -> BlockId:
        self._check_health()
        return self._metadata.current_block()

    def applied_block_height(self) -> BlockId:
        return self._persistence.applied_block_height()

    def durable_block_height(self) -> BlockId:
        self._check_health()
        return self._persistence.durable_block_height()

    def shutdown(self) -> None:
        with self._update_mutex:
            self._check_health()
            self._persistence.flush()
            durable = self._persistence.durable_block_height()
            self._persistence.set_applied_block(durable)
            logger.info("creating snapshot at block %d for graceful shutdown", durable)
            shards = self._state_engine.snapshot_shards()
            path = self._snapshotter.create_snapshot(durable, shards)
            logger.info("snapshot at block %d created: %s", durable, path)
            self._persistence.shutdown()

    def ensure_healthy(self) -> None:
        self._check_health()
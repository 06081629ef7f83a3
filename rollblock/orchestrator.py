"""The orchestrator interface and its read-only implementation."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from rollblock.engine import StateEngine
from rollblock.errors import ReadOnlyOperation
from rollblock.metrics import StoreMetrics
from rollblock.types import BlockId, Key, Operation, Value

logger = logging.getLogger(__name__)


class BlockOrchestrator(ABC):
    """Coordinates applying, persisting and rolling back blocks."""

    @abstractmethod
    def apply_operations(self, block_height: BlockId, ops: Sequence[Operation]) -> None:
        """Apply a block of operations at ``block_height``."""

    @abstractmethod
    def revert_to(self, block: BlockId) -> None:
        """Roll the state back to ``block``."""

    @abstractmethod
    def fetch(self, key: Key) -> Value:
        """Return the value under ``key``, or 0 when absent."""

    @abstractmethod
    def metrics(self) -> StoreMetrics | None:
        """Return the store's metrics, if any are kept."""

    @abstractmethod
    def current_block(self) -> BlockId:
        """Return the block height recorded in metadata."""

    @abstractmethod
    def applied_block_height(self) -> BlockId:
        """Return the highest block applied in memory."""

    @abstractmethod
    def durable_block_height(self) -> BlockId:
        """Return the highest block known to be durable."""

    @abstractmethod
    def shutdown(self) -> None:
        """Flush pending work and stop."""

    @abstractmethod
    def ensure_healthy(self) -> None:
        """Raise if the store has hit a fatal error."""


class ReadOnlyBlockOrchestrator(BlockOrchestrator):
    """Serves lookups and refuses every mutation.

    ``metadata`` must provide ``current_block()``.
    """

    def __init__(self, state_engine: StateEngine, metadata: Any, restored_block: BlockId) -> None:
        metadata_block = metadata.current_block()
        initial_block = max(metadata_block, restored_block)
        if metadata_block < restored_block:
            logger.info(
                "metadata block %d lags behind restored snapshot block %d in read-only "
                "mode; reporting the restored height until metadata catches up",
                metadata_block,
                restored_block,
            )

        self._state_engine = state_engine
        self._metadata = metadata
        self._metrics = StoreMetrics()
        self._metrics.update_durable_block(initial_block)
        self._metrics.update_applied_block(initial_block)
        self._metrics.update_key_count(state_engine.total_keys())
        self._applied_block = initial_block
        self._lock = threading.Lock()

    def apply_operations(self, block_height: BlockId, ops: Sequence[Operation]) -> None:
        raise ReadOnlyOperation("apply_operations")

    def revert_to(self, block: BlockId) -> None:
        raise ReadOnlyOperation("revert_to")

    def fetch(self, key: Key) -> Value:
        start = time.monotonic()
        result = self._state_engine.lookup(key)
        self._metrics.record_lookup(time.monotonic() - start)
        return 0 if result is None else result

    def metrics(self) -> StoreMetrics:
        return self._metrics

    def current_block(self) -> BlockId:
        recorded = self._metadata.current_block()
        with self._lock:
            if recorded >= self._applied_block:
                self._applied_block = recorded
            block = self._applied_block
        self._metrics.update_applied_block(block)
        self._metrics.update_durable_block(block)
        return block

    def applied_block_height(self) -> BlockId:
        with self._lock:
            return self._applied_block

    def durable_block_height(self) -> BlockId:
        return self.current_block()

    def shutdown(self) -> None:
        return None

    def ensure_healthy(self) -> None:
        return None
"""Durability settings shared by orchestrators and the persistence runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

DEFAULT_MAX_PENDING_BLOCKS = 1024
DEFAULT_SNAPSHOT_INTERVAL = timedelta(seconds=3600)


@dataclass(frozen=True)
class DurabilityMode:
    """Whether blocks are persisted inline or by a background worker.

    ``pending_limit`` is None for synchronous persistence, otherwise the number
    of blocks that may wait for asynchronous persistence.
    """

    pending_limit: int | None = DEFAULT_MAX_PENDING_BLOCKS

    def __post_init__(self) -> None:
        if self.pending_limit is not None and self.pending_limit < 0:
            raise ValueError("max_pending_blocks must not be negative")

    @classmethod
    def synchronous(cls) -> DurabilityMode:
        """Persist every block on the mutation path."""
        return cls(None)

    @classmethod
    def asynchronous(cls, max_pending_blocks: int = DEFAULT_MAX_PENDING_BLOCKS) -> DurabilityMode:
        """Persist blocks in the background with up to ``max_pending_blocks`` queued."""
        return cls(max_pending_blocks)

    def max_pending_blocks(self) -> int:
        """Return how many blocks may be pending persistence in this mode."""
        return 1 if self.pending_limit is None else self.pending_limit

    def is_async(self) -> bool:
        """Return True when persistence happens off the calling thread."""
        return self.pending_limit is not None


@dataclass(frozen=True)
class PersistenceSettings:
    """Persistence configuration for orchestrators."""

    durability_mode: DurabilityMode = field(default_factory=DurabilityMode)
    snapshot_interval: timedelta = DEFAULT_SNAPSHOT_INTERVAL
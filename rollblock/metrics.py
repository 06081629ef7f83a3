"""Runtime metrics and health reporting for the store."""

from __future__ import annotations

import enum
import math
import threading
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timedelta

from rollblock.types import BlockId

_RECENT_WINDOW = 100
_RESPONSIVE_SECS = 60

Duration = "timedelta | float"


def _to_micros(duration: timedelta | float) -> int:
    """Convert a timedelta or a number of seconds to whole microseconds."""
    if isinstance(duration, timedelta):
        micros = duration // timedelta(microseconds=1)
    else:
        micros = int(duration * 1_000_000)
    if micros < 0:
        raise ValueError("a duration must not be negative")
    return micros


def calculate_percentile(values: Iterable[int], percentile: int) -> int:
    """Return the nearest-rank percentile of ``values``, or 0 when there are none."""
    ordered = sorted(values)
    if not ordered:
        return 0
    position = (percentile / 100.0) * (len(ordered) - 1.0)
    index = int(math.floor(position + 0.5))
    return ordered[min(index, len(ordered) - 1)]


@dataclass(frozen=True)
class MetricsSnapshot:
    """The store's metrics at one point in time."""

    operations_applied: int
    set_operations_applied: int
    zero_value_deletes_applied: int
    blocks_committed: int
    rollbacks_executed: int
    lookups_performed: int
    avg_apply_time_us: int
    avg_rollback_time_us: int
    avg_lookup_time_us: int
    apply_p50_us: int
    apply_p95_us: int
    apply_p99_us: int
    rollback_p50_us: int
    rollback_p95_us: int
    rollback_p99_us: int
    current_block_height: BlockId
    applied_block_height: BlockId
    durable_block_height: BlockId
    total_keys_stored: int
    failed_operations: int
    checksum_errors: int
    last_operation_secs: int | None


class HealthState(enum.Enum):
    """Overall condition of the store."""

    HEALTHY = "HEALTHY"
    IDLE = "IDLE"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class HealthStatus:
    """Health summary derived from a metrics snapshot."""

    state: HealthState
    current_block: BlockId
    durable_block: BlockId
    total_operations: int
    failed_operations: int
    checksum_errors: int
    last_operation_secs: int | None


def derive_health(snapshot: MetricsSnapshot) -> HealthStatus:
    """Classify a metrics snapshot into a health status."""
    is_healthy = snapshot.failed_operations == 0 and snapshot.checksum_errors == 0
    secs = snapshot.last_operation_secs
    has_activity = secs is not None
    is_responsive = secs is not None and secs < _RESPONSIVE_SECS

    if not is_healthy and snapshot.checksum_errors > 0:
        state = HealthState.DEGRADED
    elif not is_healthy:
        state = HealthState.UNHEALTHY
    elif not has_activity:
        state = HealthState.IDLE
    elif is_responsive:
        state = HealthState.HEALTHY
    else:
        state = HealthState.IDLE

    return HealthStatus(
        state=state,
        current_block=snapshot.applied_block_height,
        durable_block=snapshot.durable_block_height,
        total_operations=snapshot.operations_applied,
        failed_operations=snapshot.failed_operations,
        checksum_errors=snapshot.checksum_errors,
        last_operation_secs=snapshot.last_operation_secs,
    )


class StoreMetrics:
    """Thread-safe, monotonically increasing counters describing store activity."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._operations_applied = 0
        self._set_operations_applied = 0
        self._zero_value_deletes_applied = 0
        self._blocks_committed = 0
        self._rollbacks_executed = 0
        self._lookups_performed = 0
        self._total_apply_time_us = 0
        self._total_rollback_time_us = 0
        self._total_lookup_time_us = 0
        self._applied_block_height = 0
        self._durable_block_height = 0
        self._total_keys_stored = 0
        self._failed_operations = 0
        self._checksum_errors = 0
        self._recent_apply_us: deque[int] = deque(maxlen=_RECENT_WINDOW)
        self._recent_rollback_us: deque[int] = deque(maxlen=_RECENT_WINDOW)
        self._last_operation_at: float | None = None

    def record_apply(
        self,
        block_height: BlockId,
        ops_count: int,
        set_count: int,
        zero_delete_count: int,
        duration: timedelta | float,
    ) -> None:
        """Record a block applied at ``block_height``."""
        micros = _to_micros(duration)
        with self._lock:
            self._operations_applied += ops_count
            self._set_operations_applied += set_count
            self._zero_value_deletes_applied += zero_delete_count
            self._blocks_committed += 1
            self._total_apply_time_us += micros
            self._applied_block_height = block_height
            self._last_operation_at = time.monotonic()
            self._recent_apply_us.append(micros)

    def record_rollback(self, target_block: BlockId, duration: timedelta | float) -> None:
        """Record a rollback to ``target_block``."""
        micros = _to_micros(duration)
        with self._lock:
            self._rollbacks_executed += 1
            self._total_rollback_time_us += micros
            self._applied_block_height = target_block
            self._durable_block_height = target_block
            self._last_operation_at = time.monotonic()
            self._recent_rollback_us.append(micros)

    def record_lookup(self, duration: timedelta | float) -> None:
        micros = _to_micros(duration)
        with self._lock:
            self._lookups_performed += 1
            self._total_lookup_time_us += micros

    def record_failure(self) -> None:
        with self._lock:
            self._failed_operations += 1

    def record_checksum_error(self) -> None:
        with self._lock:
            self._checksum_errors += 1

    def update_durable_block(self, block_height: BlockId) -> None:
        with self._lock:
            self._durable_block_height = block_height

    def update_applied_block(self, block_height: BlockId) -> None:
        with self._lock:
            self._applied_block_height = block_height

    def update_key_count(self, count: int) -> None:
        with self._lock:
            self._total_keys_stored = count

    def recent_apply_times(self) -> list[int]:
        """Return the durations, in microseconds, of the most recent applies."""
        with self._lock:
            return list(self._recent_apply_us)

    def snapshot(self) -> MetricsSnapshot:
        """Return a consistent copy of every metric."""
        with self._lock:
            blocks = self._blocks_committed
            rollbacks = self._rollbacks_executed
            lookups = self._lookups_performed
            apply_times = list(self._recent_apply_us)
            rollback_times = list(self._recent_rollback_us)
            last_secs = (
                None
                if self._last_operation_at is None
                else int(time.monotonic() - self._last_operation_at)
            )
            return MetricsSnapshot(
                operations_applied=self._operations_applied,
                set_operations_applied=self._set_operations_applied,
                zero_value_deletes_applied=self._zero_value_deletes_applied,
                blocks_committed=blocks,
                rollbacks_executed=rollbacks,
                lookups_performed=lookups,
                avg_apply_time_us=self._total_apply_time_us // blocks if blocks else 0,
                avg_rollback_time_us=(
                    self._total_rollback_time_us // rollbacks if rollbacks else 0
                ),
                avg_lookup_time_us=self._total_lookup_time_us // lookups if lookups else 0,
                apply_p50_us=calculate_percentile(apply_times, 50),
                apply_p95_us=calculate_percentile(apply_times, 95),
                apply_p99_us=calculate_percentile(apply_times, 99),
                rollback_p50_us=calculate_percentile(rollback_times, 50),
                rollback_p95_us=calculate_percentile(rollback_times, 95),
                rollback_p99_us=calculate_percentile(rollback_times, 99),
                current_block_height=self._applied_block_height,
                applied_block_height=self._applied_block_height,
                durable_block_height=self._durable_block_height,
                total_keys_stored=self._total_keys_stored,
                failed_operations=self._failed_operations,
                checksum_errors=self._checksum_errors,
                last_operation_secs=last_secs,
            )

    def health(self) -> HealthStatus:
        return derive_health(self.snapshot())
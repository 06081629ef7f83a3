import pytest

from rollblock.engine import ShardedStateEngine
from rollblock.errors import ReadOnlyOperation
from rollblock.orchestrator import BlockOrchestrator, ReadOnlyBlockOrchestrator
from rollblock.raw_table import RawTableShard
from rollblock.types import Operation


class MemoryMetadata:
    def __init__(self, current=0):
        self.current = current

    def current_block(self):
        return self.current


KEY_A = bytes([1]) * 8
KEY_B = bytes([2]) * 8
MISSING = bytes([3]) * 8


def make_engine():
    engine = ShardedStateEngine([RawTableShard(0, 8)])
    delta = engine.prepare_journal(1, [Operation(KEY_A, 10), Operation(KEY_B, 20)])
    engine.commit(1, delta)
    return engine


def make_orchestrator(metadata_block=1, restored_block=1):
    metadata = MemoryMetadata(metadata_block)
    return ReadOnlyBlockOrchestrator(make_engine(), metadata, restored_block), metadata


def test_is_a_block_orchestrator():
    orchestrator, _ = make_orchestrator()
    assert isinstance(orchestrator, BlockOrchestrator)
    assert orchestrator.fetch(KEY_A) == 10


def test_apply_operations_is_rejected():
    orchestrator, _ = make_orchestrator()
    with pytest.raises(ReadOnlyOperation) as info:
        orchestrator.apply_operations(2, [Operation(KEY_A, 1)])
    assert info.value.operation == "apply_operations"
    assert orchestrator.fetch(KEY_A) == 10


def test_revert_to_is_rejected():
    orchestrator, _ = make_orchestrator()
    with pytest.raises(ReadOnlyOperation) as info:
        orchestrator.revert_to(0)
    assert info.value.operation == "revert_to"


def test_fetch_returns_zero_for_missing_and_counts_lookups():
    orchestrator, _ = make_orchestrator()
    assert orchestrator.fetch(KEY_B) == 20
    assert orchestrator.fetch(MISSING) == 0
    assert orchestrator.metrics().snapshot().lookups_performed == 2


def test_initial_block_uses_higher_of_metadata_and_restored():
    orchestrator, _ = make_orchestrator(metadata_block=3, restored_block=7)
    assert orchestrator.applied_block_height() == 7
    assert orchestrator.current_block() == 7
    snapshot = orchestrator.metrics().snapshot()
    assert snapshot.applied_block_height == 7
    assert snapshot.durable_block_height == 7


def test_current_block_follows_metadata_when_it_catches_up():
    orchestrator, metadata = make_orchestrator(metadata_block=3, restored_block=7)
    metadata.current = 9
    assert orchestrator.current_block() == 9
    assert orchestrator.applied_block_height() == 9
    assert orchestrator.durable_block_height() == 9
    assert orchestrator.metrics().snapshot().durable_block_height == 9


def test_key_count_metric_matches_engine():
    engine = make_engine()
    orchestrator = ReadOnlyBlockOrchestrator(engine, MemoryMetadata(1), 0)
    assert orchestrator.metrics().snapshot().total_keys_stored == engine.total_keys()


def test_shutdown_leaves_lookups_working():
    orchestrator, _ = make_orchestrator()
    orchestrator.ensure_healthy()
    orchestrator.shutdown()
    assert orchestrator.fetch(KEY_A) == 10
    assert orchestrator.applied_block_height() == 1
from datetime import timedelta

import pytest

from rollblock.durability import DurabilityMode, PersistenceSettings


def test_default_mode_is_async_with_1024_pending():
    mode = DurabilityMode()
    assert mode.is_async() is True
    assert mode.max_pending_blocks() == 1024
    assert mode == DurabilityMode.asynchronous(1024)


def test_synchronous_mode_allows_one_pending_block():
    mode = DurabilityMode.synchronous()
    assert mode.is_async() is False
    assert mode.max_pending_blocks() == 1


def test_asynchronous_mode_keeps_its_limit():
    mode = DurabilityMode.asynchronous(7)
    assert mode.is_async() is True
    assert mode.max_pending_blocks() == 7


def test_modes_compare_by_value():
    assert DurabilityMode.synchronous() == DurabilityMode.synchronous()
    assert (DurabilityMode.synchronous() == DurabilityMode.asynchronous(1)) is False


def test_negative_limit_is_rejected():
    with pytest.raises(ValueError):
        DurabilityMode.asynchronous(-1)


def test_persistence_settings_defaults():
    settings = PersistenceSettings()
    assert settings.durability_mode == DurabilityMode.asynchronous(1024)
    assert settings.snapshot_interval == timedelta(seconds=3600)


def test_persistence_settings_custom_values():
    settings = PersistenceSettings(
        durability_mode=DurabilityMode.synchronous(),
        snapshot_interval=timedelta(0),
    )
    assert settings.durability_mode.is_async() is False
    assert settings.snapshot_interval == timedelta(0)
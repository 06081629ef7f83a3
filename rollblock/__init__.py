"""Sharded in-memory state with block-level apply, persistence hooks and rollback."""

__version__ = "0.1.0"
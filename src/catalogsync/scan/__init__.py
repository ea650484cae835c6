"""
Scan module - Resumable cursor enumeration.

- CursorScanner: bounded, deduplicating scroll-cursor paging
- CheckpointStore: TTL-bounded progress between invocations
"""

from .checkpoint_store import CheckpointBackend, CheckpointStore, ScanCheckpoint, checkpoint_key
from .cursor_scanner import (
    CursorScanner,
    ExitReason,
    Items,
    NoChange,
    ScanOutcome,
    ScanState,
)


__all__ = [
    # Scanner
    "CursorScanner",
    "ScanOutcome",
    "ScanState",
    "ExitReason",
    "NoChange",
    "Items",
    # Checkpoints
    "CheckpointStore",
    "CheckpointBackend",
    "ScanCheckpoint",
    "checkpoint_key",
]

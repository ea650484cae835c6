"""
catalogsync - Quota-aware, resumable catalog enumeration for marketplace sellers.

Pages through a seller's catalog with the search endpoint's scroll cursor,
keeping under the per-minute request quota and checkpointing progress so
short-lived (serverless) invocations can pick up where the last one stopped.
"""

__version__ = "1.0.0"
__status__ = "Development"

from .api import APIClient, CallbackTokenProvider, ScanPage, StaticTokenProvider, TokenProvider
from .core import AppConfig, RateLimiter, load_config
from .core.orchestrator import SyncOrchestrator, SyncStepResult
from .scan import (
    CheckpointStore,
    CursorScanner,
    ExitReason,
    Items,
    NoChange,
    ScanCheckpoint,
    ScanOutcome,
    ScanState,
)


__all__ = [
    "APIClient",
    "AppConfig",
    "CallbackTokenProvider",
    "CheckpointStore",
    "CursorScanner",
    "ExitReason",
    "Items",
    "NoChange",
    "RateLimiter",
    "ScanCheckpoint",
    "ScanOutcome",
    "ScanPage",
    "ScanState",
    "StaticTokenProvider",
    "SyncOrchestrator",
    "SyncStepResult",
    "TokenProvider",
    "load_config",
]

"""
Checkpoint Store - In-memory, TTL-bounded scan progress keyed by session.

A serverless invocation cannot hold a scroll cursor across calls, so the
scanner parks its state here between invocations of the same session. Entries
expire after 10 minutes; the remote cursor itself is only good for about 5.

This store lives for the lifetime of the process. Deployments running several
instances should implement CheckpointBackend on top of a shared cache instead.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

import structlog


CheckpointKey = Tuple[str, str]

DEFAULT_SESSION = "default"


def checkpoint_key(account_id: str, session_id: Optional[str] = None) -> CheckpointKey:
    """Build the store key for an (account, session) pair"""
    return (str(account_id), session_id or DEFAULT_SESSION)


@dataclass
class ScanCheckpoint:
    """
    Progress of one cursor scan.

    ``cursor is None and completed`` marks an exhausted enumeration that must
    not be resumed.
    """
    account_id: str
    session_id: str
    cursor: Optional[str] = None
    collected_ids: List[str] = field(default_factory=list)
    seen_ids: Set[str] = field(default_factory=set)
    duplicates_detected: int = 0
    pages_processed: int = 0
    completed: bool = False
    saved_at: float = 0.0

    @property
    def key(self) -> CheckpointKey:
        return (self.account_id, self.session_id)

    @property
    def is_terminal(self) -> bool:
        return self.completed and self.cursor is None

    def copy(self) -> "ScanCheckpoint":
        return replace(
            self,
            collected_ids=list(self.collected_ids),
            seen_ids=set(self.seen_ids),
        )


class CheckpointBackend(Protocol):
    """Interface the scanner needs from a checkpoint store"""

    def load(self, key: CheckpointKey) -> Optional[ScanCheckpoint]: ...

    def save(self, key: CheckpointKey, checkpoint: ScanCheckpoint) -> None: ...

    def clear(self, key: CheckpointKey) -> None: ...


class CheckpointStore:
    """
    Process-local checkpoint store with passive expiry.

    Expired entries are dropped when read and swept on every save; there is
    no background timer.

    Example:
        >>> store = CheckpointStore(ttl_seconds=600)
        >>> store.save(("123", "s1"), checkpoint)
        >>> store.load(("123", "s1"))
    """

    def __init__(
        self,
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the store.

        Args:
            ttl_seconds: Age after which a checkpoint is considered stale
            clock: Wall-clock time source in seconds
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CheckpointKey, ScanCheckpoint] = {}

        self.logger = structlog.get_logger(__name__)

    def _is_expired(self, checkpoint: ScanCheckpoint, now: float) -> bool:
        return now - checkpoint.saved_at > self.ttl_seconds

    def save(self, key: CheckpointKey, checkpoint: ScanCheckpoint) -> None:
        """Upsert a checkpoint, stamping saved_at, then sweep expired entries"""
        stored = checkpoint.copy()
        stored.saved_at = self._clock()
        checkpoint.saved_at = stored.saved_at
        self._entries[key] = stored

        self.logger.debug(
            "checkpoint_saved",
            key=key,
            cursor=bool(stored.cursor),
            collected=len(stored.collected_ids),
            completed=stored.completed,
        )

        self.evict_expired()

    def load(self, key: CheckpointKey) -> Optional[ScanCheckpoint]:
        """
        Get a checkpoint.

        Returns:
            A copy of the stored checkpoint, or None if absent or expired
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            self.logger.info("checkpoint_expired", key=key)
            return None

        return entry.copy()

    def clear(self, key: CheckpointKey) -> None:
        """Delete a checkpoint (no-op if absent)"""
        if self._entries.pop(key, None) is not None:
            self.logger.debug("checkpoint_cleared", key=key)

    def evict_expired(self) -> int:
        """
        Drop every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [k for k, v in self._entries.items() if self._is_expired(v, now)]
        for k in expired:
            del self._entries[k]
        if expired:
            self.logger.debug("checkpoints_evicted", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_entries": len(self._entries),
            "entries": [f"{a}:{s}" for a, s in self._entries],
            "ttl_seconds": self.ttl_seconds,
        }

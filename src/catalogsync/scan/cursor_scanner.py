"""
Cursor Scanner - Resumable enumeration of a seller catalog.

The search endpoint's scan mode hands out an opaque scroll cursor that lives
for about five minutes. A serverless invocation only has time for a handful
of pages, so each call to ``scan`` fetches at most ``max_pages`` pages,
deduplicates what it sees, and parks the cursor plus the dedup state in the
checkpoint store for the next invocation of the same session.

States per invocation:

    FRESH / RESUMING -> PAGING -> BATCH_LIMIT_REACHED   (more pages, checkpoint saved)
                               -> NATURALLY_COMPLETED   (terminal checkpoint saved)
                               -> ERROR_ABORTED         (checkpoint untouched)

Only one invocation per (account, session) may run at a time; the store is
last-writer-wins and concurrent runs would corrupt the dedup state.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import structlog

from ..api.client import APIClient
from ..core.config import ScanConfig
from ..core.rate_limiter import RateLimiter
from ..exceptions import CatalogAPIError, CursorExpiredError, error_details
from .checkpoint_store import CheckpointBackend, ScanCheckpoint, checkpoint_key


class ScanState(Enum):
    """Scanner state machine"""
    FRESH = "fresh"
    RESUMING = "resuming"
    PAGING = "paging"
    BATCH_LIMIT_REACHED = "batch_limit_reached"
    NATURALLY_COMPLETED = "naturally_completed"
    ERROR_ABORTED = "error_aborted"


class ExitReason(Enum):
    """Why the paging loop stopped"""
    NO_PRODUCTS = "no_products"
    ONLY_DUPLICATES = "only_duplicates"
    NO_CURSOR = "no_cursor"
    BATCH_LIMIT = "batch_limit"
    DEADLINE = "deadline"
    ERROR = "error"
    ALREADY_COMPLETED = "already_completed"


NATURAL_EXITS = frozenset({
    ExitReason.NO_PRODUCTS,
    ExitReason.ONLY_DUPLICATES,
    ExitReason.NO_CURSOR,
})


@dataclass(frozen=True)
class NoChange:
    """Scan reconfirmed completion without new entries; keep stored data"""
    pass


@dataclass(frozen=True)
class Items:
    """Every id collected so far in this scan session"""
    ids: Tuple[str, ...] = ()


ScanResult = Union[NoChange, Items]


@dataclass
class ScanOutcome:
    """
    Result of one scan invocation.

    ``result`` is NoChange when nothing new was found and the scan is
    complete. Callers must not treat that as an empty catalog.
    """
    result: ScanResult
    new_ids: List[str] = field(default_factory=list)
    scan_completed: bool = False
    batch_completed: bool = False
    has_more: bool = False
    pages_processed: int = 0
    total_pages: int = 0
    duplicates_detected: int = 0
    cursor: Optional[str] = None
    exit_reason: ExitReason = ExitReason.BATCH_LIMIT
    state: ScanState = ScanState.FRESH
    error: Optional[str] = None

    @property
    def ids(self) -> Optional[List[str]]:
        """Collected ids, or None for the no-change signal"""
        if isinstance(self.result, NoChange):
            return None
        return list(self.result.ids)

    @property
    def is_no_change(self) -> bool:
        return isinstance(self.result, NoChange)

    @property
    def new_ids_count(self) -> int:
        return len(self.new_ids)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "ids": self.ids,
            "new_ids": list(self.new_ids),
            "new_ids_count": self.new_ids_count,
            "scan_completed": self.scan_completed,
            "batch_completed": self.batch_completed,
            "has_more": self.has_more,
            "pages_processed": self.pages_processed,
            "total_pages": self.total_pages,
            "duplicates_detected": self.duplicates_detected,
            "cursor": self.cursor,
            "exit_reason": self.exit_reason.value,
            "state": self.state.value,
            "error": self.error,
        }


@dataclass
class ScannerStats:
    scans: int = 0
    short_circuits: int = 0
    pages_fetched: int = 0
    ids_collected: int = 0
    duplicates: int = 0
    cursor_restarts: int = 0
    errors: int = 0
    last_outcome: Optional[Dict[str, Any]] = None


class CursorScanner:
    """
    Drives the scroll-cursor search across serverless invocations.

    Example:
        >>> scanner = CursorScanner(client, CheckpointStore(), ScanConfig())
        >>> outcome = await scanner.scan("123", "sess-1")
        >>> while outcome.has_more:
        ...     outcome = await scanner.scan("123", "sess-1", continue_from_checkpoint=True)
    """

    def __init__(
        self,
        client: APIClient,
        checkpoints: CheckpointBackend,
        config: Optional[ScanConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the scanner.

        Args:
            client: API client used for search pages
            checkpoints: Store holding progress between invocations
            config: Scan configuration (uses defaults if None)
            rate_limiter: Limiter consulted for pacing (defaults to the client's)
            sleep: Coroutine used for pacing delays
            clock: Monotonic clock the ``deadline`` argument refers to
        """
        self.client = client
        self.checkpoints = checkpoints
        self.config = config or ScanConfig()
        if rate_limiter is None:
            rate_limiter = getattr(client, "rate_limiter", None)
        self.rate_limiter = rate_limiter
        self._sleep = sleep
        self._clock = clock

        self.stats = ScannerStats()
        self.logger = structlog.get_logger(__name__)

    @property
    def max_pages(self) -> int:
        """Pages allowed per invocation"""
        return max(1, math.ceil(self.config.page_budget / self.config.page_size))

    async def scan(
        self,
        account_id: str,
        session_id: Optional[str] = None,
        continue_from_checkpoint: bool = False,
        deadline: Optional[float] = None,
    ) -> ScanOutcome:
        """
        Run one bounded scan invocation.

        Args:
            account_id: Seller account whose catalog is enumerated
            session_id: Scan session (defaults to "default")
            continue_from_checkpoint: Resume from the stored checkpoint
            deadline: Absolute clock() value after which no new page starts

        Returns:
            ScanOutcome for this invocation

        Raises:
            CatalogAPIError: If a page fails before any new id was collected
        """
        key = checkpoint_key(account_id, session_id)
        self.stats.scans += 1

        checkpoint: Optional[ScanCheckpoint] = None
        if continue_from_checkpoint:
            checkpoint = self.checkpoints.load(key)

        if checkpoint is not None and checkpoint.is_terminal:
            self.stats.short_circuits += 1
            self.logger.info(
                "scan_already_completed",
                account_id=key[0],
                session_id=key[1],
                collected=len(checkpoint.collected_ids),
            )
            outcome = ScanOutcome(
                result=NoChange(),
                scan_completed=True,
                batch_completed=True,
                has_more=False,
                total_pages=checkpoint.pages_processed,
                duplicates_detected=checkpoint.duplicates_detected,
                exit_reason=ExitReason.ALREADY_COMPLETED,
                state=ScanState.NATURALLY_COMPLETED,
            )
            self.stats.last_outcome = outcome.to_dict()
            return outcome

        if checkpoint is None:
            state = ScanState.FRESH
            checkpoint = ScanCheckpoint(account_id=key[0], session_id=key[1])
            self.logger.info(
                "scan_started",
                account_id=key[0],
                session_id=key[1],
                max_pages=self.max_pages,
                page_size=self.config.page_size,
            )
        else:
            state = ScanState.RESUMING
            self.logger.info(
                "scan_resumed",
                account_id=key[0],
                session_id=key[1],
                collected=len(checkpoint.collected_ids),
                has_cursor=checkpoint.cursor is not None,
                pages_so_far=checkpoint.pages_processed,
            )

        prior_count = len(checkpoint.collected_ids)
        prior_duplicates = checkpoint.duplicates_detected
        resume_point = checkpoint.copy()

        try:
            exit_reason, pages, error = await self._page_loop(checkpoint, deadline)
        except asyncio.CancelledError:
            # Ids from this invocation never reach the caller; keep them unseen
            self.logger.warning(
                "scan_cancelled",
                account_id=key[0],
                session_id=key[1],
                discarded=len(checkpoint.collected_ids) - prior_count,
            )
            resume_point.completed = False
            self.checkpoints.save(key, resume_point)
            raise

        new_ids = checkpoint.collected_ids[prior_count:]
        self.stats.ids_collected += len(new_ids)
        self.stats.duplicates += checkpoint.duplicates_detected - prior_duplicates

        if error is not None:
            self.stats.errors += 1
            self.logger.error(
                "scan_page_failed",
                account_id=key[0],
                session_id=key[1],
                pages=pages,
                new_ids=len(new_ids),
                **error_details(error),
            )
            if not new_ids:
                raise error

        naturally_completed = exit_reason in NATURAL_EXITS
        has_more = not naturally_completed and (
            checkpoint.cursor is not None or exit_reason is ExitReason.DEADLINE
        )
        scan_completed = naturally_completed or (pages >= self.max_pages and not has_more)

        if error is not None:
            state = ScanState.ERROR_ABORTED
            scan_completed = False
        elif has_more:
            state = ScanState.BATCH_LIMIT_REACHED
            checkpoint.completed = False
            self.checkpoints.save(key, checkpoint)
        elif scan_completed:
            state = ScanState.NATURALLY_COMPLETED
            checkpoint.cursor = None
            checkpoint.completed = True
            self.checkpoints.save(key, checkpoint)

        if scan_completed and not new_ids:
            result: ScanResult = NoChange()
        else:
            result = Items(tuple(checkpoint.collected_ids))

        outcome = ScanOutcome(
            result=result,
            new_ids=list(new_ids),
            scan_completed=scan_completed,
            batch_completed=error is None,
            has_more=has_more,
            pages_processed=pages,
            total_pages=checkpoint.pages_processed,
            duplicates_detected=checkpoint.duplicates_detected,
            cursor=checkpoint.cursor,
            exit_reason=exit_reason,
            state=state,
            error=str(error) if error is not None else None,
        )
        self.stats.last_outcome = outcome.to_dict()

        self.logger.info(
            "scan_finished",
            account_id=key[0],
            session_id=key[1],
            exit_reason=exit_reason.value,
            state=state.value,
            pages=pages,
            new_ids=len(new_ids),
            collected=len(checkpoint.collected_ids),
            duplicates=checkpoint.duplicates_detected,
            has_more=has_more,
            scan_completed=scan_completed,
            no_change=outcome.is_no_change,
        )
        return outcome

    async def _page_loop(
        self,
        checkpoint: ScanCheckpoint,
        deadline: Optional[float],
    ) -> Tuple[ExitReason, int, Optional[CatalogAPIError]]:
        """
        Fetch pages into the checkpoint until a stop condition.

        Returns:
            (exit reason, pages processed in this invocation, error if any)
        """
        max_pages = self.max_pages
        pages = 0
        duplicate_streak = 0
        cursor_restarts = 0
        # After a cursor restart the first pages replay ids we already have.
        # A checkpoint with seen ids but no cursor was saved mid-restart.
        replaying = checkpoint.cursor is None and bool(checkpoint.seen_ids)

        while pages < max_pages:
            if deadline is not None and deadline - self._clock() < self.config.min_seconds_per_page:
                self.logger.warning("scan_deadline_reached", pages=pages)
                return ExitReason.DEADLINE, pages, None

            try:
                page = await self.client.search_scan(
                    checkpoint.account_id,
                    cursor=checkpoint.cursor,
                    page_size=self.config.page_size,
                )
            except CursorExpiredError as e:
                if checkpoint.cursor is not None and cursor_restarts < self.config.max_cursor_restarts:
                    cursor_restarts += 1
                    self.stats.cursor_restarts += 1
                    self.logger.warning(
                        "scan_cursor_expired",
                        account_id=checkpoint.account_id,
                        restart=cursor_restarts,
                        error=str(e),
                    )
                    checkpoint.cursor = None
                    duplicate_streak = 0
                    replaying = True
                    continue
                return ExitReason.ERROR, pages, e
            except CatalogAPIError as e:
                return ExitReason.ERROR, pages, e

            pages += 1
            checkpoint.pages_processed += 1
            self.stats.pages_fetched += 1

            if not page.ids:
                checkpoint.cursor = None
                return ExitReason.NO_PRODUCTS, pages, None

            new_count = 0
            duplicate_count = 0
            for entity_id in page.ids:
                if entity_id in checkpoint.seen_ids:
                    duplicate_count += 1
                    continue
                checkpoint.seen_ids.add(entity_id)
                checkpoint.collected_ids.append(entity_id)
                new_count += 1
            checkpoint.duplicates_detected += duplicate_count

            self.logger.debug(
                "scan_page_fetched",
                page=pages,
                ids=len(page.ids),
                new=new_count,
                duplicates=duplicate_count,
                collected=len(checkpoint.collected_ids),
            )

            if new_count == 0:
                if not replaying:
                    duplicate_streak += 1
                if duplicate_streak >= self.config.max_duplicate_pages:
                    self.logger.warning(
                        "scan_only_duplicates",
                        streak=duplicate_streak,
                        duplicates=checkpoint.duplicates_detected,
                    )
                    return ExitReason.ONLY_DUPLICATES, pages, None
            else:
                duplicate_streak = 0
                replaying = False

            if not page.next_cursor:
                checkpoint.cursor = None
                return ExitReason.NO_CURSOR, pages, None

            checkpoint.cursor = page.next_cursor

            if pages < max_pages:
                await self._pace()

        return ExitReason.BATCH_LIMIT, pages, None

    async def _pace(self) -> None:
        if self.rate_limiter is not None and self.rate_limiter.is_near_limit():
            delay = self.config.near_limit_page_delay
        else:
            delay = self.config.page_delay
        if delay > 0:
            await self._sleep(delay)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get scanner statistics. Read-only, safe for health endpoints.

        Returns:
            Dictionary with current statistics
        """
        return {
            "scans": self.stats.scans,
            "short_circuits": self.stats.short_circuits,
            "pages_fetched": self.stats.pages_fetched,
            "ids_collected": self.stats.ids_collected,
            "duplicates": self.stats.duplicates,
            "cursor_restarts": self.stats.cursor_restarts,
            "errors": self.stats.errors,
            "max_pages": self.max_pages,
            "last_outcome": self.stats.last_outcome,
        }

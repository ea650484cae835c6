"""
Sync Orchestrator - Decides when to start, continue, or stop a catalog scan.

One ``sync_step`` is sized for one serverless invocation: run a bounded scan,
fetch the details of the ids it discovered, hand them to the entity sink, and
report whether another step is needed.

Design Pattern: Observer
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..api.client import APIClient
from ..scan.cursor_scanner import CursorScanner, ScanOutcome


EntitySink = Callable[[str, List[Dict[str, Any]]], Awaitable[None]]


@dataclass
class SyncStepResult:
    """Progress report for one sync step"""
    account_id: str
    session_id: Optional[str]
    outcome: ScanOutcome
    fetched: int = 0
    missing_ids: List[str] = field(default_factory=list)
    execution_time: float = 0.0
    completed_at: datetime = field(default_factory=datetime.now)

    @property
    def has_more(self) -> bool:
        return self.outcome.has_more

    @property
    def scan_completed(self) -> bool:
        return self.outcome.scan_completed

    @property
    def no_change(self) -> bool:
        return self.outcome.is_no_change

    def to_dict(self) -> Dict[str, Any]:
        ids = self.outcome.ids
        return {
            "account_id": self.account_id,
            "session_id": self.session_id,
            "has_more": self.has_more,
            "scan_completed": self.scan_completed,
            "no_change": self.no_change,
            "progress": {
                "total_collected": len(ids) if ids is not None else None,
                "new_in_batch": self.outcome.new_ids_count,
                "fetched": self.fetched,
                "missing": len(self.missing_ids),
                "pages_in_batch": self.outcome.pages_processed,
                "duplicates_detected": self.outcome.duplicates_detected,
            },
            "missing_ids": list(self.missing_ids),
            "exit_reason": self.outcome.exit_reason.value,
            "error": self.outcome.error,
            "execution_time": round(self.execution_time, 3),
            "completed_at": self.completed_at.isoformat(),
        }


class SyncOrchestrator:
    """
    Drives CursorScanner and the multi-get fetcher for a seller account.

    Callers must not run two steps for the same session concurrently.

    Example:
        >>> orchestrator = SyncOrchestrator(scanner, client, entity_sink=save_items)
        >>> step = await orchestrator.sync_step("123", "sess-1", continue_from_checkpoint=False)
        >>> while step.has_more:
        ...     step = await orchestrator.sync_step("123", "sess-1")
    """

    def __init__(
        self,
        scanner: CursorScanner,
        client: APIClient,
        entity_sink: Optional[EntitySink] = None,
        attributes: Optional[List[str]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            scanner: Cursor scanner producing ids
            client: API client used for multi-get
            entity_sink: Coroutine receiving (account_id, entities) to persist
            attributes: Restrict multi-get to these fields
        """
        self.scanner = scanner
        self.client = client
        self.entity_sink = entity_sink
        self.attributes = attributes

        self.is_running = False
        self.steps_run = 0
        self.last_result: Optional[SyncStepResult] = None

        self.logger = structlog.get_logger(__name__)
        self.observers: List[Callable[[str, Dict[str, Any]], None]] = []

    def subscribe(self, observer: Callable[[str, Dict[str, Any]], None]):
        """
        Subscribe to orchestrator events.

        Args:
            observer: Callback taking (event, data)
        """
        self.observers.append(observer)
        self.logger.info("observer_subscribed", observer=getattr(observer, "__name__", repr(observer)))

    def _notify_observers(self, event: str, data: Dict[str, Any]):
        """Notify all observers of an event"""
        for observer in self.observers:
            try:
                observer(event, data)
            except Exception as e:
                self.logger.error(
                    "observer_error",
                    observer=getattr(observer, "__name__", repr(observer)),
                    error=str(e),
                )

    async def sync_step(
        self,
        account_id: str,
        session_id: Optional[str] = None,
        continue_from_checkpoint: bool = True,
        deadline: Optional[float] = None,
    ) -> SyncStepResult:
        """
        Run one scan invocation and persist what it found.

        Args:
            account_id: Seller account
            session_id: Scan session
            continue_from_checkpoint: False forces a scan from the first page
            deadline: Forwarded to CursorScanner.scan

        Returns:
            SyncStepResult describing this step
        """
        start = time.monotonic()
        self.is_running = True
        self._notify_observers("sync_step_started", {
            "account_id": account_id,
            "session_id": session_id,
            "continue": continue_from_checkpoint,
        })

        try:
            outcome = await self.scanner.scan(
                account_id,
                session_id,
                continue_from_checkpoint=continue_from_checkpoint,
                deadline=deadline,
            )

            result = SyncStepResult(account_id=account_id, session_id=session_id, outcome=outcome)

            if outcome.is_no_change:
                self.logger.info(
                    "sync_no_change",
                    account_id=account_id,
                    session_id=session_id,
                )
            elif outcome.new_ids:
                entities = await self.client.get_multiple(outcome.new_ids, self.attributes)
                fetched_ids = {str(e.get("id")) for e in entities if isinstance(e, dict)}
                result.fetched = len(entities)
                result.missing_ids = [i for i in outcome.new_ids if i not in fetched_ids]

                if result.missing_ids:
                    self.logger.warning(
                        "sync_entities_missing",
                        account_id=account_id,
                        missing=len(result.missing_ids),
                    )

                if entities and self.entity_sink is not None:
                    await self.entity_sink(account_id, entities)

            result.execution_time = time.monotonic() - start
            self.steps_run += 1
            self.last_result = result
        finally:
            self.is_running = False

        self.logger.info(
            "sync_step_complete",
            account_id=account_id,
            session_id=session_id,
            new=outcome.new_ids_count,
            fetched=result.fetched,
            has_more=result.has_more,
            scan_completed=result.scan_completed,
            execution_time=f"{result.execution_time:.2f}s",
        )
        self._notify_observers("sync_step_completed", result.to_dict())
        return result

    async def run(
        self,
        account_id: str,
        session_id: Optional[str] = None,
        max_steps: int = 50,
    ) -> List[SyncStepResult]:
        """
        Run steps until the scan completes or max_steps is reached.

        The first step always starts from page one; later steps resume.

        Returns:
            Results of every step, in order
        """
        results: List[SyncStepResult] = []
        for step in range(max_steps):
            result = await self.sync_step(
                account_id,
                session_id,
                continue_from_checkpoint=step > 0,
            )
            results.append(result)
            if not result.has_more:
                break
        else:
            self.logger.warning("sync_max_steps_reached", account_id=account_id, max_steps=max_steps)

        self._notify_observers("sync_completed", {
            "account_id": account_id,
            "session_id": session_id,
            "steps": len(results),
            "scan_completed": bool(results) and results[-1].scan_completed,
        })
        return results

    def get_status(self) -> Dict[str, Any]:
        """
        Get current orchestrator status.

        Returns:
            Status dictionary
        """
        return {
            "is_running": self.is_running,
            "steps_run": self.steps_run,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "scanner": self.scanner.get_stats(),
            "rate_limit": self.client.get_rate_limit_stats(),
        }

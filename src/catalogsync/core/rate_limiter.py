"""
Sliding-Window Rate Limiter - Keeps outbound calls under the marketplace quota.

The marketplace counts requests per seller over a trailing 60 second window.
This limiter keeps its own copy of that window, parks callers until the
oldest request ages out, and adapts its ceiling to what the server tells us:

1. HTTP 429 -> multiplicative backoff, sleep, scheduled linear recovery
2. Low X-RateLimit-Remaining header -> proactive derate
3. Near the ceiling -> callers may route through the FIFO queue

Design Pattern: Adaptive Control System
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import structlog

from ..exceptions import QuotaExceededError
from .config import RateLimitConfig


@dataclass
class RequestBudget:
    """Current permitted requests per window"""
    ceiling: int
    window_seconds: float
    safety_margin_pct: float


@dataclass
class QueueEntry:
    """A request waiting for the drain loop"""
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class RateLimiterStats:
    total_requests: int = 0
    rejected_requests: int = 0
    queued_requests: int = 0
    average_wait_time: float = 0.0


class RateLimiter:
    """
    Sliding-window limiter with request queue and self-adjusting ceiling.

    One instance is meant to be shared by every caller in a process that talks
    to the same seller account; create it once and inject it.

    Example:
        >>> limiter = RateLimiter(RateLimitConfig())
        >>> data = await limiter.execute(lambda: session_get("/users/me"))
        >>> item = await limiter.enqueue(lambda: session_get("/items/MLA1"))
        >>> limiter.get_stats()["utilization_pct"]
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the rate limiter.

        Args:
            config: Limiter configuration (uses defaults if None)
            clock: Monotonic time source in seconds
            sleep: Coroutine used for every wait
        """
        self.config = config or RateLimitConfig()
        self.budget = RequestBudget(
            ceiling=self.config.max_ceiling,
            window_seconds=self.config.window_seconds,
            safety_margin_pct=self.config.safety_margin_pct,
        )
        self.stats = RateLimiterStats()

        self._clock = clock
        self._sleep = sleep
        self._window: Deque[float] = deque()
        self._lock = asyncio.Lock()

        self._queue: Deque[QueueEntry] = deque()
        self._draining = False
        self._drain_task: Optional[asyncio.Task] = None
        self._recovery_handles: List[asyncio.TimerHandle] = []

        self.logger = structlog.get_logger(__name__)

        self.logger.info(
            "rate_limiter_initialized",
            ceiling=self.budget.ceiling,
            min_ceiling=self.config.min_ceiling,
            window_seconds=self.config.window_seconds,
        )

    @property
    def ceiling(self) -> int:
        return self.budget.ceiling

    def _purge(self) -> None:
        cutoff = self._clock() - self.budget.window_seconds
        purged = 0
        while self._window and self._window[0] <= cutoff:
            self._window.popleft()
            purged += 1
        if purged:
            self.logger.debug("rate_window_purged", purged=purged)

    def current_count(self) -> int:
        """Requests recorded inside the trailing window"""
        self._purge()
        return len(self._window)

    def can_proceed(self) -> bool:
        """Purge expired timestamps and report whether a request fits now"""
        count = self.current_count()
        allowed = count < self.budget.ceiling
        if not allowed:
            self.logger.warning(
                "rate_limit_reached",
                current=count,
                ceiling=self.budget.ceiling,
            )
        return allowed

    def record(self) -> None:
        """Record an outbound request at the current time (no capacity check)"""
        self._window.append(self._clock())
        self.stats.total_requests += 1

        if self.stats.total_requests % self.config.stats_log_every == 0:
            self.logger.info(
                "rate_limiter_stats",
                current=len(self._window),
                ceiling=self.budget.ceiling,
                total_requests=self.stats.total_requests,
            )

    def is_near_limit(self) -> bool:
        """True once the window is above the near-limit ratio of the ceiling"""
        return self.current_count() > self.budget.ceiling * self.config.near_limit_ratio

    async def await_availability(self) -> float:
        """
        Suspend until the window has room for one more request.

        Returns:
            Seconds spent waiting (0 when a slot was free immediately)
        """
        waited = 0.0
        while not self.can_proceed():
            oldest = self._window[0]
            wait = (oldest + self.budget.window_seconds) - self._clock()
            if wait <= 0:
                # Oldest entry expires on the next purge
                continue

            self.logger.info("rate_limit_wait", wait=f"{wait:.2f}s")
            await self._sleep(wait)
            waited += wait
        return waited

    async def _acquire_slot(self) -> float:
        """Wait for capacity and record the request atomically"""
        waited = 0.0
        while True:
            waited += await self.await_availability()
            async with self._lock:
                if self.current_count() < self.budget.ceiling:
                    self.record()
                    return waited

    async def execute(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run one request through the limiter.

        Args:
            fn: Zero-argument coroutine function issuing the request

        Returns:
            Whatever fn returns

        Raises:
            QuotaExceededError: After backoff has been applied
        """
        waited = await self._acquire_slot()
        self._update_average_wait(waited)

        try:
            result = await fn()
        except QuotaExceededError as e:
            self.logger.error(
                "rate_limit_exceeded",
                status_code=429,
                retry_after=e.retry_after,
                ceiling=self.budget.ceiling,
            )
            await self._handle_quota_exceeded(e)
            raise

        return result

    def enqueue(self, fn: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        """
        Queue a request to run in strict FIFO order.

        Args:
            fn: Zero-argument coroutine function issuing the request

        Returns:
            Future resolved with fn's result (or its exception)
        """
        loop = asyncio.get_running_loop()
        entry = QueueEntry(operation=fn, future=loop.create_future(), enqueued_at=self._clock())
        self._queue.append(entry)
        self.stats.queued_requests += 1

        if not self._draining:
            self._draining = True
            self._drain_task = loop.create_task(self._drain_queue())

        return entry.future

    async def _drain_queue(self) -> None:
        """Single drain loop; runs until the queue is empty"""
        self.logger.debug("rate_queue_drain_started", queue_length=len(self._queue))
        try:
            while self._queue:
                entry = self._queue.popleft()
                if entry.future.done():
                    continue

                try:
                    result = await self.execute(entry.operation)
                except asyncio.CancelledError:
                    entry.future.cancel()
                    raise
                except Exception as e:
                    if not entry.future.done():
                        entry.future.set_exception(e)
                else:
                    if not entry.future.done():
                        entry.future.set_result(result)

                if self.config.queue_item_delay > 0:
                    await self._sleep(self.config.queue_item_delay)
        finally:
            self._draining = False
            self.logger.debug("rate_queue_drain_finished")

    async def _handle_quota_exceeded(self, error: QuotaExceededError) -> None:
        """Backoff policy: lower the ceiling, pause, schedule recovery"""
        self.stats.rejected_requests += 1

        old_ceiling = self.budget.ceiling
        self.budget.ceiling = max(
            self.config.min_ceiling,
            int(self.budget.ceiling * self.config.backoff_factor),
        )
        self.logger.warning(
            "rate_limit_ceiling_lowered",
            old_ceiling=old_ceiling,
            new_ceiling=self.budget.ceiling,
        )

        wait = error.retry_after if error.retry_after is not None else self.config.default_retry_after
        self.logger.info("rate_limit_backoff", wait=f"{wait:.2f}s")
        await self._sleep(wait)

        self._schedule_recovery()

    def _schedule_recovery(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._recovery_handles = [h for h in self._recovery_handles if not h.cancelled()]
        handle = loop.call_later(self.config.recovery_delay, self._recover_ceiling)
        self._recovery_handles.append(handle)

    def _recover_ceiling(self) -> None:
        old_ceiling = self.budget.ceiling
        self.budget.ceiling = min(
            self.config.max_ceiling,
            self.budget.ceiling + self.config.recovery_step,
        )
        if self.budget.ceiling != old_ceiling:
            self.logger.info(
                "rate_limit_ceiling_restored",
                old_ceiling=old_ceiling,
                new_ceiling=self.budget.ceiling,
            )

    def on_response_feedback(
        self,
        remaining: Optional[int],
        reset_hint: Optional[float] = None,
    ) -> None:
        """
        Adjust the ceiling from server quota headers.

        Args:
            remaining: X-RateLimit-Remaining value, if the server sent one
            reset_hint: X-RateLimit-Reset value, if the server sent one
        """
        if remaining is None:
            return

        self.logger.debug("rate_limit_feedback", remaining=remaining, reset=reset_hint)

        if remaining < self.config.low_remaining_threshold:
            old_ceiling = self.budget.ceiling
            self.budget.ceiling = max(
                self.config.min_ceiling,
                int(self.budget.ceiling * self.config.derate_factor),
            )
            self.logger.warning(
                "rate_limit_derated",
                remaining=remaining,
                old_ceiling=old_ceiling,
                new_ceiling=self.budget.ceiling,
            )

    def _update_average_wait(self, elapsed: float) -> None:
        if self.stats.average_wait_time == 0:
            self.stats.average_wait_time = elapsed
        else:
            self.stats.average_wait_time = (self.stats.average_wait_time + elapsed) / 2

    def reset_stats(self) -> None:
        """Reset counters (the window and ceiling are left untouched)"""
        self.stats = RateLimiterStats()
        self.logger.info("rate_limiter_stats_reset")

    def get_stats(self) -> Dict[str, Any]:
        """
        Get limiter statistics. Read-only, safe for health endpoints.

        Returns:
            Dictionary with current statistics
        """
        count = self.current_count()
        return {
            "current_count": count,
            "ceiling": self.budget.ceiling,
            "min_ceiling": self.config.min_ceiling,
            "max_ceiling": self.config.max_ceiling,
            "utilization_pct": round(count / self.budget.ceiling * 100) if self.budget.ceiling else 0,
            "queue_length": len(self._queue),
            "total_requests": self.stats.total_requests,
            "rejected": self.stats.rejected_requests,
            "queued": self.stats.queued_requests,
            "avg_wait_time": round(self.stats.average_wait_time, 4),
            "window_seconds": self.budget.window_seconds,
            "safety_margin_pct": self.budget.safety_margin_pct,
            "is_near_limit": count > self.budget.ceiling * self.config.near_limit_ratio,
        }

    async def close(self) -> None:
        """Cancel scheduled recoveries and any running drain loop"""
        for handle in self._recovery_handles:
            handle.cancel()
        self._recovery_handles.clear()

        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass

        for entry in self._queue:
            if not entry.future.done():
                entry.future.cancel()
        self._queue.clear()

        self.logger.info("rate_limiter_closed")

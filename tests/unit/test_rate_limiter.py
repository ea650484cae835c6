"""
Unit tests for RateLimiter module.

Run with: pytest tests/unit/test_rate_limiter.py -v
"""

import asyncio

import pytest

from catalogsync.core.config import RateLimitConfig
from catalogsync.core.rate_limiter import RateLimiter
from catalogsync.exceptions import QuotaExceededError, TransientAPIError
from tests.conftest import FakeClock


def make_limiter(clock: FakeClock, **overrides) -> RateLimiter:
    settings = dict(queue_item_delay=0, default_retry_after=0)
    settings.update(overrides)
    return RateLimiter(RateLimitConfig(**settings), clock=clock, sleep=clock.sleep)


class TestRateLimiter:
    """Test suite for RateLimiter class"""

    def test_initialization_with_defaults(self):
        """Test limiter starts at the maximum ceiling with empty stats"""
        limiter = RateLimiter()

        assert limiter.ceiling == 1400
        assert limiter.config.min_ceiling == 600
        assert limiter.config.window_seconds == 60.0
        assert limiter.stats.total_requests == 0
        assert limiter.current_count() == 0

    def test_initialization_with_custom_config(self):
        """Test limiter honours a custom ceiling range"""
        config = RateLimitConfig(max_ceiling=50, min_ceiling=10, window_seconds=30)
        limiter = RateLimiter(config)

        assert limiter.ceiling == 50
        assert limiter.budget.window_seconds == 30

    def test_window_counts_only_recent_requests(self, fake_clock):
        """Test timestamps at or before now - window are never counted"""
        limiter = make_limiter(fake_clock, max_ceiling=3, min_ceiling=1)

        for offset in (0, 10, 20):
            fake_clock.now = 1000.0 + offset
            limiter.record()

        assert limiter.can_proceed() is False

        fake_clock.now = 1000.0 + 59.9
        assert limiter.current_count() == 3
        assert limiter.can_proceed() is False

        fake_clock.now = 1000.0 + 60.0
        assert limiter.current_count() == 2
        assert limiter.can_proceed() is True

        fake_clock.now = 1000.0 + 85.0
        assert limiter.current_count() == 0

    @pytest.mark.asyncio
    async def test_await_availability_returns_zero_when_free(self, fake_clock):
        """Test no wait happens while there is room"""
        limiter = make_limiter(fake_clock)

        waited = await limiter.await_availability()

        assert waited == 0
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_await_availability_waits_for_oldest_to_expire(self, fake_clock):
        """Test wait = oldest + window - now"""
        limiter = make_limiter(fake_clock, max_ceiling=2, min_ceiling=1)
        limiter.record()
        fake_clock.advance(10)
        limiter.record()
        fake_clock.advance(20)

        waited = await limiter.await_availability()

        assert waited == pytest.approx(30.0)
        assert fake_clock.sleeps == [pytest.approx(30.0)]
        assert limiter.can_proceed() is True

    @pytest.mark.asyncio
    async def test_execute_records_and_returns_result(self, fake_clock):
        """Test execute gates, records, and returns the call result"""
        limiter = make_limiter(fake_clock)

        async def call():
            return {"ok": True}

        result = await limiter.execute(call)

        assert result == {"ok": True}
        assert limiter.stats.total_requests == 1
        assert limiter.current_count() == 1

    @pytest.mark.asyncio
    async def test_execute_never_exceeds_ceiling_under_concurrency(self, fake_clock):
        """Test concurrent callers share the window without overshooting"""
        limiter = make_limiter(fake_clock, max_ceiling=3, min_ceiling=1)
        observed = []

        async def call():
            observed.append(limiter.current_count())
            await asyncio.sleep(0)
            return True

        results = await asyncio.gather(*(limiter.execute(call) for _ in range(10)))

        assert all(results)
        assert limiter.stats.total_requests == 10
        assert max(observed) <= 3

    @pytest.mark.asyncio
    async def test_quota_exceeded_lowers_ceiling_and_sleeps(self, fake_clock):
        """Test 429 backoff: ceiling * 0.8, Retry-After sleep, error re-raised"""
        limiter = make_limiter(fake_clock)

        async def call():
            raise QuotaExceededError(retry_after=7)

        with pytest.raises(QuotaExceededError):
            await limiter.execute(call)

        assert limiter.ceiling == 1120
        assert limiter.stats.rejected_requests == 1
        assert 7 in fake_clock.sleeps

        await limiter.close()

    @pytest.mark.asyncio
    async def test_quota_exceeded_without_retry_after_uses_default(self, fake_clock):
        """Test the default pause applies when no Retry-After is given"""
        limiter = make_limiter(fake_clock, default_retry_after=60)

        async def call():
            raise QuotaExceededError()

        with pytest.raises(QuotaExceededError):
            await limiter.execute(call)

        assert fake_clock.sleeps[-1] == 60
        await limiter.close()

    @pytest.mark.asyncio
    async def test_other_errors_do_not_trigger_backoff(self, fake_clock):
        """Test only quota errors change the ceiling"""
        limiter = make_limiter(fake_clock)

        async def call():
            raise TransientAPIError("boom", status_code=503)

        with pytest.raises(TransientAPIError):
            await limiter.execute(call)

        assert limiter.ceiling == 1400
        assert limiter.stats.rejected_requests == 0

    @pytest.mark.asyncio
    async def test_ceiling_recovers_after_delay(self, fake_clock):
        """Test the scheduled recovery raises the ceiling by one step"""
        limiter = make_limiter(fake_clock, recovery_delay=0.01, recovery_step=100)

        async def call():
            raise QuotaExceededError(retry_after=0)

        with pytest.raises(QuotaExceededError):
            await limiter.execute(call)
        assert limiter.ceiling == 1120

        await asyncio.sleep(0.05)

        assert limiter.ceiling == 1220
        await limiter.close()

    @pytest.mark.asyncio
    async def test_ceiling_stays_within_bounds(self, fake_clock):
        """Test any mix of backoffs, derates and recoveries keeps min <= ceiling <= max"""
        limiter = make_limiter(fake_clock, max_ceiling=1400, min_ceiling=600)

        async def call():
            raise QuotaExceededError(retry_after=0)

        for _ in range(10):
            with pytest.raises(QuotaExceededError):
                await limiter.execute(call)
            assert 600 <= limiter.ceiling <= 1400

        assert limiter.ceiling == 600

        limiter.on_response_feedback(remaining=5)
        assert limiter.ceiling == 600

        for _ in range(20):
            limiter._recover_ceiling()
            assert 600 <= limiter.ceiling <= 1400

        assert limiter.ceiling == 1400
        await limiter.close()

    def test_response_feedback_derates_on_low_remaining(self, fake_clock):
        """Test a low X-RateLimit-Remaining halves the ceiling"""
        limiter = make_limiter(fake_clock)

        limiter.on_response_feedback(remaining=50, reset_hint=30)

        assert limiter.ceiling == 700

    def test_response_feedback_ignores_healthy_or_missing_headers(self, fake_clock):
        """Test plenty of remaining quota (or no header) changes nothing"""
        limiter = make_limiter(fake_clock)

        limiter.on_response_feedback(remaining=None)
        limiter.on_response_feedback(remaining=900)

        assert limiter.ceiling == 1400

    def test_is_near_limit(self, fake_clock):
        """Test near-limit flips above 80% of the ceiling"""
        limiter = make_limiter(fake_clock, max_ceiling=10, min_ceiling=1)

        for _ in range(8):
            limiter.record()
        assert limiter.is_near_limit() is False

        limiter.record()
        assert limiter.is_near_limit() is True

    @pytest.mark.asyncio
    async def test_enqueue_preserves_fifo_order(self, fake_clock):
        """Test queued requests run in the order they were enqueued"""
        limiter = make_limiter(fake_clock)
        order = []

        def make_call(n):
            async def call():
                order.append(n)
                return n
            return call

        futures = [limiter.enqueue(make_call(n)) for n in range(5)]
        results = await asyncio.gather(*futures)

        assert results == [0, 1, 2, 3, 4]
        assert order == [0, 1, 2, 3, 4]
        assert limiter.stats.queued_requests == 5
        assert limiter.get_stats()["queue_length"] == 0

    @pytest.mark.asyncio
    async def test_drain_loop_runs_once_at_a_time(self, fake_clock):
        """Test concurrent enqueues never run two queued calls at once"""
        limiter = make_limiter(fake_clock)
        running = 0
        peak = 0

        async def call():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            running -= 1
            return True

        async def producer():
            return await limiter.enqueue(call)

        results = await asyncio.gather(*(producer() for _ in range(8)))

        assert all(results)
        assert peak == 1
        assert limiter._draining is False

    @pytest.mark.asyncio
    async def test_enqueue_propagates_errors_to_future(self, fake_clock):
        """Test a failing queued call rejects only its own future"""
        limiter = make_limiter(fake_clock)

        async def bad():
            raise TransientAPIError("nope", status_code=500)

        async def good():
            return "fine"

        bad_future = limiter.enqueue(bad)
        good_future = limiter.enqueue(good)

        with pytest.raises(TransientAPIError):
            await bad_future
        assert await good_future == "fine"

    def test_get_stats(self, fake_clock):
        """Test get_stats() exposes the observability fields"""
        limiter = make_limiter(fake_clock, max_ceiling=100, min_ceiling=10)
        for _ in range(25):
            limiter.record()

        stats = limiter.get_stats()

        assert stats["current_count"] == 25
        assert stats["ceiling"] == 100
        assert stats["utilization_pct"] == 25
        assert stats["queue_length"] == 0
        assert stats["total_requests"] == 25
        assert stats["rejected"] == 0
        assert "avg_wait_time" in stats

    @pytest.mark.asyncio
    async def test_average_wait_excludes_request_latency(self, fake_clock):
        """Test avg_wait_time counts the slot wait only, not the call itself"""
        limiter = make_limiter(fake_clock, max_ceiling=2, min_ceiling=1)
        limiter.record()
        limiter.record()
        fake_clock.advance(20)

        async def slow_call():
            fake_clock.advance(5)
            return True

        await limiter.execute(slow_call)

        assert limiter.get_stats()["avg_wait_time"] == pytest.approx(40.0)

    def test_reset_stats(self, fake_clock):
        """Test reset_stats() clears counters but keeps the window"""
        limiter = make_limiter(fake_clock)
        limiter.record()

        limiter.reset_stats()

        assert limiter.stats.total_requests == 0
        assert limiter.current_count() == 1

    @pytest.mark.asyncio
    async def test_close_cancels_pending_queue(self, fake_clock):
        """Test close() cancels futures still waiting in the queue"""
        limiter = make_limiter(fake_clock)
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()
            return True

        first = limiter.enqueue(blocked)
        second = limiter.enqueue(blocked)
        await asyncio.sleep(0)

        await limiter.close()

        assert first.cancelled()
        assert second.cancelled()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

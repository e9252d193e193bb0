# tests/services/test_rate_limiter.py
"""
Tests for the per-platform rate limiter.

Coverage:
- Rolling one-second bound under concurrent callers
- FIFO service order
- Timeout and capacity errors
- Registry defaults and per-job overrides

Run with: pytest tests/services/test_rate_limiter.py -v
"""

import asyncio

import pytest

from leadsync.errors import RateLimitTimeout
from leadsync.services.rate_limiter import (
    CompositeLimiter, PLATFORM_CONFIGS, RateLimiter, RateLimiterRegistry,
)


def max_in_any_window(times, window=1.0):
    """Largest number of dispatches inside any half-open window [t, t + window)."""
    best = 0
    for start in times:
        inside = [t for t in times if start <= t < start + window - 1e-6]
        best = max(best, len(inside))
    return best


# ============================================================================
# TEST: Rolling window bound
# ============================================================================

class TestRateBound:

    @pytest.mark.asyncio
    async def test_concurrent_callers_never_exceed_rps(self, fake_clock):
        """20 concurrent acquires at 5 rps: no rolling second holds more than 5"""
        limiter = RateLimiter("smartlead", requests_per_second=5, clock=fake_clock,
                              sleep=fake_clock.sleep, timeout=60)
        dispatched = []

        async def worker():
            await limiter.acquire()
            dispatched.append(fake_clock())

        await asyncio.gather(*(worker() for _ in range(20)))

        assert len(dispatched) == 20
        assert max_in_any_window(dispatched) <= 5
        # 20 slots at 5 rps need at least 3 extra seconds after the initial burst
        assert dispatched[-1] - dispatched[0] >= 3.0 - 1e-6
        assert limiter.get_stats()["total_acquired"] == 20

    @pytest.mark.asyncio
    async def test_fractional_rate_still_bounded(self, fake_clock):
        limiter = RateLimiter("attio", requests_per_second=2.5, clock=fake_clock,
                              sleep=fake_clock.sleep)
        dispatched = []
        for _ in range(10):
            await limiter.acquire()
            dispatched.append(fake_clock())

        assert max_in_any_window(dispatched) <= 2

    @pytest.mark.asyncio
    async def test_waiters_served_in_arrival_order(self, fake_clock):
        limiter = RateLimiter("lemlist", requests_per_second=1, clock=fake_clock,
                              sleep=fake_clock.sleep)
        order = []

        async def worker(i):
            await limiter.acquire()
            order.append(i)

        tasks = []
        for i in range(5):
            tasks.append(asyncio.create_task(worker(i)))
            await asyncio.sleep(0)
        await asyncio.gather(*tasks)

        assert order == [0, 1, 2, 3, 4]


# ============================================================================
# TEST: Errors
# ============================================================================

class TestLimiterErrors:

    @pytest.mark.asyncio
    async def test_timeout_when_slot_is_too_far_away(self, fake_clock):
        limiter = RateLimiter("attio", requests_per_second=1, clock=fake_clock,
                              sleep=fake_clock.sleep)
        await limiter.acquire()

        with pytest.raises(RateLimitTimeout):
            await limiter.acquire(timeout=0.5)

        assert limiter.get_stats()["timeouts"] == 1
        # gave up without sleeping
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, fake_clock):
        limiter = RateLimiter("attio", requests_per_second=1, clock=fake_clock,
                              sleep=fake_clock.sleep)
        await limiter.acquire()
        with pytest.raises(RateLimitTimeout) as exc_info:
            await limiter.acquire(timeout=0)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_request_larger_than_capacity(self, fake_clock):
        limiter = RateLimiter("smartlead", requests_per_second=10, burst=3,
                              clock=fake_clock, sleep=fake_clock.sleep)
        with pytest.raises(ValueError):
            await limiter.acquire(n=4)

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter("x", requests_per_second=0)
        with pytest.raises(ValueError):
            RateLimiter("x", requests_per_second=1, max_batch_size=0)

    def test_clamp_batch_size(self):
        limiter = RateLimiter("lemlist", requests_per_second=10, max_batch_size=50)
        assert limiter.clamp_batch_size(500) == 50
        assert limiter.clamp_batch_size(20) == 20
        assert limiter.clamp_batch_size(0) == 1


# ============================================================================
# TEST: Registry
# ============================================================================

class TestRegistry:

    def test_platform_defaults(self):
        registry = RateLimiterRegistry()
        assert registry.get("smartlead").requests_per_second == 10
        assert registry.get("lemlist").max_batch_size == 50
        assert registry.get("attio").requests_per_second == 5
        assert registry.get("unknown").max_batch_size == PLATFORM_CONFIGS["default"]["max_batch_size"]

    def test_one_shared_limiter_per_platform(self):
        registry = RateLimiterRegistry()
        assert registry.get("Smartlead") is registry.get("smartlead")

    def test_settings_overrides(self):
        registry = RateLimiterRegistry(overrides={"smartlead": {"requests_per_second": 3}})
        limiter = registry.get("smartlead")
        assert limiter.requests_per_second == 3
        assert limiter.max_batch_size == 100

    def test_job_override_can_only_tighten(self):
        registry = RateLimiterRegistry()

        loose = registry.limiter_for_job("smartlead", {"requests_per_second": 50, "max_batch_size": 500})
        assert isinstance(loose, CompositeLimiter)
        assert loose.job_limiter.requests_per_second == 10
        assert loose.clamp_batch_size(1000) == 100

        tight = registry.limiter_for_job("smartlead", {"requests_per_second": 2, "max_batch_size": 20})
        assert tight.job_limiter.requests_per_second == 2
        assert tight.clamp_batch_size(1000) == 20
        assert tight.shared is registry.get("smartlead")

    def test_no_override_returns_shared(self):
        registry = RateLimiterRegistry()
        assert registry.limiter_for_job("lemlist") is registry.get("lemlist")

    @pytest.mark.asyncio
    async def test_composite_acquires_from_both(self, fake_clock):
        registry = RateLimiterRegistry(clock=fake_clock, sleep=fake_clock.sleep)
        composite = registry.limiter_for_job("attio", {"requests_per_second": 1})
        await composite.acquire()
        stats = composite.get_stats()
        assert stats["shared"]["total_acquired"] == 1
        assert stats["job"]["total_acquired"] == 1

    @pytest.mark.asyncio
    async def test_composite_shares_one_deadline(self, fake_clock):
        """Job limiter waits 1s of a 1.5s budget; the shared one gets only the rest"""
        shared = RateLimiter("attio", requests_per_second=0.5, clock=fake_clock,
                             sleep=fake_clock.sleep, timeout=60)
        job = RateLimiter("attio", requests_per_second=1, clock=fake_clock,
                          sleep=fake_clock.sleep, timeout=60)
        composite = CompositeLimiter(shared, job)
        await shared.acquire()
        await job.acquire()
        started = fake_clock()

        with pytest.raises(RateLimitTimeout):
            await composite.acquire(timeout=1.5)

        assert fake_clock() - started <= 1.5 + 1e-6
        assert job.get_stats()["total_acquired"] == 2
        assert shared.get_stats()["timeouts"] == 1

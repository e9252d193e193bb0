"""
Platform Rate Limiter

Token bucket per platform plus a one-second dispatch log:
- bucket capacity = burst, refilled at requests_per_second
- the dispatch log guarantees no rolling 1s window exceeds requests_per_second
- waiters are served FIFO (asyncio.Lock hands off in arrival order)
- starvation beyond the timeout raises RateLimitTimeout

No I/O happens here; only counters change.
"""

import asyncio
import math
import time
from collections import deque
from typing import Any, Awaitable, Callable, Dict, Optional
import logging

from leadsync.errors import RateLimitTimeout

logger = logging.getLogger(__name__)

_EPSILON = 1e-9
_WINDOW_SECONDS = 1.0


# Published limits of the platforms we talk to
PLATFORM_CONFIGS = {
    "smartlead": {
        "requests_per_second": 10,
        "max_batch_size": 100,
    },
    "lemlist": {
        "requests_per_second": 10,
        "max_batch_size": 50,
    },
    "attio": {
        "requests_per_second": 5,
        "max_batch_size": 25,
    },
    "default": {
        "requests_per_second": 5,
        "max_batch_size": 50,
    },
}


class RateLimiter:
    """
    Per-platform limiter shared by every task that talks to the platform.

    Args:
        platform: Platform name (for logs and stats)
        requests_per_second: Refill rate and rolling-window ceiling
        burst: Bucket capacity (defaults to the per-second ceiling)
        max_batch_size: Largest page size a single request may ask for
        timeout: Default seconds to wait for slots before giving up
        clock / sleep: Injectable for deterministic tests
    """

    def __init__(
        self,
        platform: str,
        requests_per_second: float,
        burst: Optional[int] = None,
        max_batch_size: int = 100,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")

        self.platform = platform.lower()
        self.requests_per_second = float(requests_per_second)
        self.window_limit = max(1, int(math.floor(requests_per_second)))
        self.capacity = min(burst or self.window_limit, self.window_limit)
        self.max_batch_size = max_batch_size
        self.timeout = timeout

        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._tokens = float(self.capacity)
        self._last_refill = clock()
        self._dispatch_log = deque()

        # Counters
        self.total_acquired = 0
        self.total_waits = 0
        self.total_wait_seconds = 0.0
        self.timeouts = 0

    async def acquire(self, n: int = 1, timeout: Optional[float] = None) -> None:
        """
        Block until ``n`` slots are available.

        Raises:
            ValueError: n is larger than the bucket can ever hold
            RateLimitTimeout: slots not available before the deadline
        """
        if n < 1:
            raise ValueError("n must be >= 1")
        if n > self.capacity:
            raise ValueError(
                f"{self.platform}: requested {n} slots, capacity is {self.capacity}"
            )

        timeout = self.timeout if timeout is None else timeout
        started = self._clock()
        deadline = started + timeout

        if self._lock.locked():
            try:
                await asyncio.wait_for(self._lock.acquire(), timeout=max(timeout, _EPSILON))
            except asyncio.TimeoutError:
                self.timeouts += 1
                raise RateLimitTimeout(
                    f"{self.platform}: timed out after {timeout:.1f}s waiting for rate limiter"
                )
        else:
            await self._lock.acquire()

        try:
            while True:
                now = self._clock()
                self._refill(now)
                self._trim(now)
                wait = self._wait_time(n, now)

                if wait <= 0:
                    self._tokens -= n
                    for _ in range(n):
                        self._dispatch_log.append(now)
                    self.total_acquired += n
                    waited = now - started
                    if waited > 0:
                        self.total_waits += 1
                        self.total_wait_seconds += waited
                    return

                if now + wait > deadline + _EPSILON:
                    self.timeouts += 1
                    logger.warning(
                        f"🚨 {self.platform}: rate limiter starved "
                        f"(needed {wait:.2f}s, {max(deadline - now, 0):.2f}s left)"
                    )
                    raise RateLimitTimeout(
                        f"{self.platform}: timed out after {timeout:.1f}s waiting for rate limiter"
                    )

                logger.debug(f"⏳ {self.platform}: waiting {wait:.3f}s for {n} slot(s)")
                await self._sleep(wait)
        finally:
            self._lock.release()

    def clamp_batch_size(self, requested: int) -> int:
        return max(1, min(requested, self.max_batch_size))

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(
                float(self.capacity),
                self._tokens + elapsed * self.requests_per_second
            )
            self._last_refill = now

    def _trim(self, now: float) -> None:
        horizon = now - _WINDOW_SECONDS + _EPSILON
        while self._dispatch_log and self._dispatch_log[0] <= horizon:
            self._dispatch_log.popleft()

    def _wait_time(self, n: int, now: float) -> float:
        bucket_wait = 0.0
        if self._tokens + _EPSILON < n:
            bucket_wait = (n - self._tokens) / self.requests_per_second

        window_wait = 0.0
        overflow = len(self._dispatch_log) + n - self.window_limit
        if overflow > 0:
            # the overflow-th oldest dispatch has to leave the window first
            window_wait = self._dispatch_log[overflow - 1] + _WINDOW_SECONDS - now

        return max(bucket_wait, window_wait, 0.0)

    def get_stats(self) -> Dict:
        """Get current rate limiter stats"""
        now = self._clock()
        self._trim(now)
        return {
            "platform": self.platform,
            "requests_per_second": self.requests_per_second,
            "capacity": self.capacity,
            "max_batch_size": self.max_batch_size,
            "total_acquired": self.total_acquired,
            "requests_last_second": len(self._dispatch_log),
            "total_waits": self.total_waits,
            "total_wait_seconds": round(self.total_wait_seconds, 3),
            "timeouts": self.timeouts,
        }


class CompositeLimiter:
    """
    Job-scoped limiter layered on the shared platform limiter.

    Both must grant the slots, so a per-job override can only tighten
    the platform ceiling, never loosen it.
    """

    def __init__(self, shared: RateLimiter, job_limiter: RateLimiter):
        self.shared = shared
        self.job_limiter = job_limiter
        self.platform = shared.platform
        self.max_batch_size = min(shared.max_batch_size, job_limiter.max_batch_size)

    async def acquire(self, n: int = 1, timeout: Optional[float] = None) -> None:
        """Both limiters share one deadline."""
        timeout = self.shared.timeout if timeout is None else timeout
        started = self.shared._clock()
        await self.job_limiter.acquire(n, timeout=timeout)
        remaining = max(timeout - (self.shared._clock() - started), 0.0)
        await self.shared.acquire(n, timeout=remaining)

    def clamp_batch_size(self, requested: int) -> int:
        return max(1, min(requested, self.max_batch_size))

    def get_stats(self) -> Dict:
        return {
            "platform": self.platform,
            "shared": self.shared.get_stats(),
            "job": self.job_limiter.get_stats(),
        }


class RateLimiterRegistry:
    """One shared limiter per platform for the whole process."""

    def __init__(
        self,
        overrides: Optional[Dict[str, Dict[str, Any]]] = None,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.overrides = overrides or {}
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self._limiters: Dict[str, RateLimiter] = {}

    def config_for(self, platform: str) -> Dict[str, Any]:
        platform = platform.lower()
        config = dict(PLATFORM_CONFIGS.get(platform, PLATFORM_CONFIGS["default"]))
        config.update(self.overrides.get(platform, {}))
        return config

    def get(self, platform: str) -> RateLimiter:
        platform = platform.lower()
        limiter = self._limiters.get(platform)
        if limiter is None:
            config = self.config_for(platform)
            limiter = RateLimiter(
                platform,
                requests_per_second=config["requests_per_second"],
                burst=config.get("burst"),
                max_batch_size=config["max_batch_size"],
                timeout=self.timeout,
                clock=self._clock,
                sleep=self._sleep,
            )
            self._limiters[platform] = limiter
            logger.info(
                f"✅ Rate limiter for {platform}: {limiter.requests_per_second} rps, "
                f"batch {limiter.max_batch_size}"
            )
        return limiter

    def limiter_for_job(self, platform: str, override: Optional[Dict[str, Any]] = None):
        """
        Shared limiter, or a composite when the job asks for tighter limits.

        Args:
            override: {"requests_per_second": float, "max_batch_size": int}
        """
        shared = self.get(platform)
        if not override:
            return shared

        rps = min(
            float(override.get("requests_per_second", shared.requests_per_second)),
            shared.requests_per_second
        )
        batch = min(
            int(override.get("max_batch_size", shared.max_batch_size)),
            shared.max_batch_size
        )
        job_limiter = RateLimiter(
            platform,
            requests_per_second=rps,
            max_batch_size=batch,
            timeout=self.timeout,
            clock=self._clock,
            sleep=self._sleep,
        )
        return CompositeLimiter(shared, job_limiter)

    def get_stats(self) -> Dict[str, Dict]:
        return {name: limiter.get_stats() for name, limiter in self._limiters.items()}

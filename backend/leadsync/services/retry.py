"""
Retry policy shared by every connector call path and the CRM export.

One place decides:
- which errors are worth retrying (classifier)
- how long to back off (exponential, capped)
- when to give up (attempt cap)
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional
import logging

from leadsync.errors import is_retryable, RetryableError

logger = logging.getLogger(__name__)


class RetryCancelled(Exception):
    """Raised when the cancel event fires during a backoff sleep."""


class RetryPolicy:
    """
    Exponential backoff with an attempt cap.

    Args:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt (seconds)
        multiplier: Growth factor per attempt
        max_delay: Upper bound on a single delay
        classifier: exc -> bool, True when the error is retryable
    """

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        classifier: Callable[[BaseException], bool] = is_retryable,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.classifier = classifier

    def delay_for(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay after the given (1-based) failed attempt."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return min(delay, self.max_delay)

    async def run(
        self,
        fn: Callable[[], Awaitable[Any]],
        cancel_event: Optional[asyncio.Event] = None,
        on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
        description: str = "operation",
    ) -> Any:
        """
        Call ``fn`` until it succeeds, fails with a non-retryable error,
        or the attempt cap is reached (last error re-raised).
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except Exception as e:
                if not self.classifier(e) or attempt >= self.max_attempts:
                    if self.classifier(e):
                        logger.error(
                            f"❌ {description} failed after {attempt} attempts: {e}"
                        )
                    raise

                delay = self.delay_for(attempt, e)
                logger.warning(
                    f"⚠️ {description} attempt {attempt}/{self.max_attempts} failed: {e} "
                    f"- retrying in {delay:.1f}s"
                )
                if on_retry:
                    on_retry(attempt, e, delay)

                if cancel_event is None:
                    await asyncio.sleep(delay)
                else:
                    try:
                        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass
                    else:
                        raise RetryCancelled(f"{description} cancelled during backoff") from e


async def with_timeout(coro: Awaitable[Any], seconds: Optional[float], description: str) -> Any:
    """Per-batch timeout; a hung call becomes a RetryableError."""
    if not seconds:
        return await coro
    try:
        return await asyncio.wait_for(coro, timeout=seconds)
    except asyncio.TimeoutError:
        raise RetryableError(f"{description} timed out after {seconds:.0f}s")

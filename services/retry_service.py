"""
Retry Service with Linear Backoff
Bounded retry loop for idempotent reads (balances, allowances, receipts)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """Typed result of a bounded retry loop"""
    succeeded: bool
    value: Optional[T]
    attempts: int
    last_error: Optional[BaseException] = None


class RetryService:
    """Service for handling bounded retries with linearly increasing delay"""

    @staticmethod
    def linear_delay(base_delay: float, attempt: int) -> float:
        """Delay after the given 1-based attempt: base_delay * attempt"""
        return base_delay * attempt

    @staticmethod
    async def run_with_linear_backoff(
        func: Callable[[], Awaitable[T]],
        max_attempts: int,
        base_delay: float,
        operation: str = "operation",
        should_retry: Optional[Callable[[T], bool]] = None,
        exceptions: tuple = (Exception,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> RetryOutcome[T]:
        """
        Call func until it returns an acceptable value or max_attempts is reached

        Args:
            func: Zero-argument coroutine function to call
            max_attempts: Total attempts, including the first
            base_delay: Seconds; the wait after attempt n is base_delay * n
            operation: Name used in log lines
            should_retry: Predicate on a returned value; True means "not yet"
            exceptions: Exceptions treated as transient
            sleep: Injected for tests

        Never raises for the listed exceptions; the outcome carries the last
        error instead.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        last_error: Optional[BaseException] = None
        value: Optional[T] = None

        for attempt in range(1, max_attempts + 1):
            try:
                value = await func()
                last_error = None
                if should_retry is None or not should_retry(value):
                    if attempt > 1:
                        logger.info(f"✅ RETRY_SUCCEEDED: {operation} on attempt {attempt}/{max_attempts}")
                    return RetryOutcome(succeeded=True, value=value, attempts=attempt)
                logger.info(f"⏳ RETRY_PENDING: {operation} not ready on attempt {attempt}/{max_attempts}")
            except exceptions as e:
                last_error = e
                logger.warning(f"⚠️ RETRY_ATTEMPT_FAILED: {operation} attempt {attempt}/{max_attempts}: {e}")

            if attempt < max_attempts:
                await sleep(RetryService.linear_delay(base_delay, attempt))

        logger.error(f"❌ RETRY_EXHAUSTED: {operation} after {max_attempts} attempts")
        return RetryOutcome(succeeded=False, value=value, attempts=max_attempts, last_error=last_error)

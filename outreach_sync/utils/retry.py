"""
Retry utilities with exponential backoff.

Used for platform network failures and for scheduling continuations.
"""
import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple, Type
from outreach_sync.utils.logger import log


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[Exception] = None, delay: float = 0.0):
        """Record a retry attempt."""
        self.attempts += 1
        self.total_delay_seconds += delay
        if error:
            error_str = f"{type(error).__name__}: {str(error)}"
            self.last_error = error_str
            self.errors.append(error_str)

    def mark_success(self):
        """Mark the operation as successful."""
        self.success = True


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add randomness to prevent thundering herd

    Returns:
        Delay in seconds
    """
    # Exponential backoff: base_delay * (exponential_base ^ (attempt - 1))
    delay = base_delay * (exponential_base ** (attempt - 1))

    # Cap at max_delay
    delay = min(delay, max_delay)

    # Add jitter (0-25% of delay)
    if jitter:
        jitter_amount = delay * random.uniform(0, 0.25)
        delay += jitter_amount

    return delay


class RetryContext:
    """
    Retry an async operation with exponential backoff and stats tracking.

    `max_retries` counts retries after the first attempt, so an operation
    is tried at most max_retries + 1 times.

    Usage:
        ctx = RetryContext(max_retries=3, base_delay=1.0, jitter=False)
        result = await ctx.execute(enqueue, run)
        log.info(f"{ctx.stats.attempts} attempts")
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        label: str = "operation",
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.sleep = sleep
        self.label = label
        self.stats = RetryStats()

    async def execute(self, func: Callable, *args, **kwargs):
        """Execute a function with retry logic."""
        max_attempts = self.max_retries + 1

        for attempt in range(1, max_attempts + 1):
            try:
                if asyncio.iscoroutinefunction(func):
                    result = await func(*args, **kwargs)
                else:
                    result = func(*args, **kwargs)

                self.stats.record_attempt()
                self.stats.mark_success()

                if attempt > 1:
                    log.info(
                        f"{self.label} succeeded on attempt {attempt} "
                        f"after {self.stats.total_delay_seconds:.1f}s total delay"
                    )
                return result

            except self.retryable_exceptions as e:
                if attempt >= max_attempts:
                    self.stats.record_attempt(error=e)
                    log.error(f"{self.label} failed after {attempt} attempts: {e}")
                    raise

                delay = calculate_backoff(
                    attempt,
                    base_delay=self.base_delay,
                    max_delay=self.max_delay,
                    exponential_base=self.exponential_base,
                    jitter=self.jitter,
                )

                self.stats.record_attempt(error=e, delay=delay)

                log.warning(
                    f"{self.label} attempt {attempt} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )

                await self.sleep(delay)

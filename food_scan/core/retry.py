"""
Async retry with exponential backoff and jitter.

The executor returns a tagged ``RetryOutcome`` instead of raising when
attempts run out. ``execute_or_raise`` re-raises the last error itself for
callers that want a bare value.

Loop:
1. Invoke the operation; on success return immediately
2. Classify the failure; non-retryable or last attempt ends the sequence
3. Sleep for the computed delay (yielding to other tasks) and go again
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
RetryCallback = Callable[[int, BaseException, float], None]
SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration. Delays are in seconds."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    use_exponential: bool = True
    jitter_ratio: float = 0.25
    retryable: Optional[Callable[[BaseException], bool]] = None

    def __post_init__(self):
        """Validate policy values."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < 0:
            raise ValueError("max_delay must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be between 0 and 1")

    def should_retry(self, error: BaseException) -> bool:
        if self.retryable is not None:
            return self.retryable(error)
        return is_retryable(error)


NETWORK_POLICY = RetryPolicy(
    max_attempts=3,
    initial_delay=2.0,
    max_delay=10.0,
    backoff_multiplier=2.0,
)

PROCESSING_POLICY = RetryPolicy(
    max_attempts=2,
    initial_delay=1.0,
    max_delay=5.0,
    backoff_multiplier=1.5,
)


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """Result of one executor run. ``elapsed`` is in seconds."""
    succeeded: bool
    attempts: int
    elapsed: float
    value: Optional[T] = None
    last_error: Optional[BaseException] = None

    @classmethod
    def success(cls, value: T, attempts: int, elapsed: float) -> "RetryOutcome[T]":
        return cls(succeeded=True, attempts=attempts, elapsed=elapsed, value=value)

    @classmethod
    def failure(cls, error: BaseException, attempts: int, elapsed: float) -> "RetryOutcome[T]":
        return cls(succeeded=False, attempts=attempts, elapsed=elapsed, last_error=error)


def base_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay after failed ``attempt`` (1-based), before jitter."""
    if not policy.use_exponential:
        return policy.initial_delay
    return min(
        policy.max_delay,
        policy.initial_delay * policy.backoff_multiplier ** (attempt - 1),
    )


def compute_delay(policy: RetryPolicy, attempt: int, rng: random.Random = None) -> float:
    """Delay after failed ``attempt`` with ±``jitter_ratio`` jitter.

    Always within ``[0, max_delay]``. Linear policies get no jitter.
    """
    delay = base_delay(policy, attempt)
    if policy.use_exponential and policy.jitter_ratio:
        rng = rng or random
        delay += delay * rng.uniform(-policy.jitter_ratio, policy.jitter_ratio)
    return max(0.0, min(delay, policy.max_delay))


async def execute(
    operation: Operation,
    policy: RetryPolicy = RetryPolicy(),
    on_retry: Optional[RetryCallback] = None,
    sleep: SleepFunc = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    rng: Optional[random.Random] = None,
) -> RetryOutcome:
    """Run ``operation`` under ``policy``.

    Args:
        operation: Zero-argument coroutine function to invoke
        policy: Attempt limit, delays and retry classification
        on_retry: Called as ``on_retry(attempt, error, delay)`` before each sleep
        sleep: Awaitable sleep, injectable for tests
        clock: Monotonic seconds source used for ``elapsed``
        rng: Random source for jitter

    Returns:
        RetryOutcome with the value, or the last error, and the attempt count
    """
    started = clock()
    attempt = 1

    while True:
        try:
            value = await operation()
        except Exception as error:
            elapsed = clock() - started
            if not policy.should_retry(error):
                logger.debug("Attempt %d failed with non-retryable error: %r", attempt, error)
                return RetryOutcome.failure(error, attempt, elapsed)
            if attempt >= policy.max_attempts:
                logger.warning("Giving up after %d attempts: %r", attempt, error)
                return RetryOutcome.failure(error, attempt, elapsed)

            delay = compute_delay(policy, attempt, rng)
            logger.warning(
                "Attempt %d/%d failed (%r), retrying in %.2fs",
                attempt, policy.max_attempts, error, delay,
            )
            if on_retry is not None:
                on_retry(attempt, error, delay)
            await sleep(delay)
            attempt += 1
        else:
            return RetryOutcome.success(value, attempt, clock() - started)


async def execute_or_raise(
    operation: Operation,
    policy: RetryPolicy = RetryPolicy(),
    on_retry: Optional[RetryCallback] = None,
    sleep: SleepFunc = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    rng: Optional[random.Random] = None,
):
    """Like ``execute`` but returns the bare value.

    Raises:
        The operation's last error, unchanged, when the sequence fails
    """
    outcome = await execute(operation, policy, on_retry, sleep, clock, rng)
    if outcome.succeeded:
        return outcome.value
    raise outcome.last_error

"""
Retry/Backoff Policy for grading-service calls.

Decides whether a failure may be retried, how long to wait first, and
wraps each attempt in a hard timeout.

INVARIANTS:
- Only RETRYABLE failures are retried (busy/unavailable, malformed output,
  timeout); credential, permission and quota failures are TERMINAL
- Every attempt has its own timeout, independent of the attempt count
- After `max_attempts` the last failure is raised whatever its class
- The policy holds no per-call state; the attempt index is the only input
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from cardgrader.config import Settings
from cardgrader.models.failure import GradingTimeoutError, KnownError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_DELAY = 4.0
DEFAULT_MULTIPLIER = 1.6
DEFAULT_MAX_DELAY = 45.0
DEFAULT_JITTER = 2.0
DEFAULT_ATTEMPT_TIMEOUT = 50.0

Sleep = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, float, KnownError], None]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with jitter.

    Attributes:
        max_attempts: Total attempts including the first one
        initial_delay: Base delay in seconds before the first retry
        multiplier: Growth factor per attempt
        max_delay: Upper bound for any single wait
        jitter: Random extra delay, uniform in [0, jitter]
        attempt_timeout: Hard ceiling in seconds for one attempt
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_INITIAL_DELAY
    multiplier: float = DEFAULT_MULTIPLIER
    max_delay: float = DEFAULT_MAX_DELAY
    jitter: float = DEFAULT_JITTER
    attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
            attempt_timeout=settings.attempt_timeout_seconds,
        )

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """
        Whether to try again after `error` on zero-based `attempt`.

        Retries stop once `max_attempts` attempts have been made.
        """
        return is_retryable(error) and attempt < self.max_attempts - 1

    def compute_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Seconds to wait after zero-based `attempt` failed."""
        source = rng or random
        base = self.initial_delay * self.multiplier**attempt
        return min(base + source.uniform(0, self.jitter), self.max_delay)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str,
        *,
        sleep: Sleep = asyncio.sleep,
        on_retry: RetryCallback | None = None,
    ) -> T:
        """
        Run `operation` until it succeeds or fails terminally.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt
            context: What the call is doing, used in logs and timeout messages
            sleep: Awaitable sleep, injectable for tests
            on_retry: Called with (next attempt number, delay, error) before waiting

        Raises:
            KnownError: The terminal failure, or the last retryable one
        """
        attempt = 0
        while True:
            try:
                async with asyncio.timeout(self.attempt_timeout):
                    return await operation()
            except TimeoutError:
                error: KnownError = GradingTimeoutError(context, self.attempt_timeout)
            except KnownError as e:
                error = e

            if not self.should_retry(error, attempt):
                if error.retryable:
                    logger.warning(
                        "GRADING_RETRIES_EXHAUSTED",
                        extra={"context": context, "attempts": attempt + 1},
                    )
                raise error

            delay = self.compute_delay(attempt)
            logger.info(
                "GRADING_RETRY",
                extra={
                    "context": context,
                    "attempt": attempt + 1,
                    "delay": round(delay, 2),
                    "kind": error.kind.value,
                },
            )
            if on_retry is not None:
                on_retry(attempt + 1, delay, error)
            await sleep(delay)
            attempt += 1

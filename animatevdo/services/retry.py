"""Retry executor for external provider calls.

``run_with_retry`` wraps one asynchronous operation with tenacity:

- every failure is classified (``classify``) before the retry decision,
- non-retryable errors are raised after the first attempt with no sleep,
- retryable errors are retried with exponential backoff,
  ``min(initial_delay * backoff_factor ** (attempt - 1), max_delay)``,
- after ``max_retries`` total attempts the last classified error is raised.

``on_retry(attempt_number, delay_seconds)`` is called before each sleep.

The executor never parallelises; fan-out stages call it once per item.
It has no deadline of its own, callers that need one wrap it in
``asyncio.timeout``.

Usage:
    from animatevdo.services.retry import RetryOptions, run_with_retry

    summary = await run_with_retry(
        lambda: llm.generate(prompt),
        RetryOptions(max_retries=3),
        service_name="Research",
    )
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from animatevdo.config import Settings
from animatevdo.exceptions import ServiceError
from animatevdo.services.error_classifier import classify
from animatevdo.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

OnRetry = Callable[[int, float], None]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryOptions:
    """Backoff configuration (delays in seconds).

    Attributes:
        max_retries: Total attempts, including the first one.
        initial_delay: Delay before the second attempt.
        max_delay: Upper bound for any single delay.
        backoff_factor: Multiplier applied to the delay after each retry.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryOptions":
        return cls(
            max_retries=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_factor=settings.retry_backoff_factor,
        )

    def delay_for(self, attempt_number: int) -> float:
        """Delay slept after failed attempt ``attempt_number`` (1-based)."""
        return min(self.initial_delay * self.backoff_factor ** (attempt_number - 1), self.max_delay)


def _is_retryable(exception: BaseException) -> bool:
    return isinstance(exception, ServiceError) and exception.retryable


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    on_retry: OnRetry | None = None,
    *,
    service_name: str = "Unknown",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently, or attempts run out.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        options: Backoff configuration (defaults: 3 attempts, 1s, 30s cap, x2).
        on_retry: Callback invoked as ``on_retry(attempt_number, delay)``
            before each backoff sleep.
        service_name: Name passed to the classifier (selects marker rules).
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        The operation's result.

    Raises:
        ServiceError: The classified error of the last failed attempt.
        ValueError: If ``options.max_retries`` is less than 1.
    """
    options = options or RetryOptions()
    if options.max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    async def attempt() -> T:
        try:
            return await operation()
        except ServiceError:
            raise
        except Exception as e:
            raise classify(e, service_name) from e

    def before_sleep(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        error = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "retry_scheduled",
            service=service_name,
            attempt=retry_state.attempt_number,
            max_attempts=options.max_retries,
            delay_seconds=delay,
            error_code=error.code.value if isinstance(error, ServiceError) else None,
        )
        if on_retry is not None:
            on_retry(retry_state.attempt_number, delay)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(options.max_retries),
        wait=wait_exponential(
            multiplier=options.initial_delay,
            exp_base=options.backoff_factor,
            max=options.max_delay,
        ),
        retry=retry_if_exception(_is_retryable),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )
    return await retrying(attempt)

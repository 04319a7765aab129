"""
Exponential backoff retry logic for Daraja calls.

Two policies share one implementation:

  - Token acquisition retries network-class errors by default (2 retries).
    A gateway response (non-2xx, no access_token) is final for both.
  - STK push does NOT retry by default. A push that succeeded server-side but
    timed out on the way back would prompt the customer a second time, so the
    caller must opt in, and even then only network-class errors are retried.

Delay for attempt n (1-based) is min(base * 2**(n-1), cap).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from app.gateway.errors import MpesaError, NetworkError

logger = logging.getLogger("stk_gateway.retry")

T = TypeVar("T")

DEFAULT_TOKEN_RETRIES = 2
BASE_DELAY = 1.0
MAX_DELAY = 8.0


def backoff_delay(attempt: int, base: float = BASE_DELAY, cap: float = MAX_DELAY) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
    if attempt < 1:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


def is_network_error(exc: BaseException) -> bool:
    return isinstance(exc, NetworkError)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry, how long to wait, and which errors qualify."""

    max_retries: int = 0
    base_delay: float = BASE_DELAY
    max_delay: float = MAX_DELAY
    retryable: Callable[[BaseException], bool] = field(default=is_network_error)

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.max_delay)

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        return attempt <= self.max_retries and self.retryable(exc)


def token_policy(
    max_retries: int = DEFAULT_TOKEN_RETRIES,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
) -> RetryPolicy:
    return RetryPolicy(
        max_retries=max(0, max_retries),
        base_delay=base_delay,
        max_delay=max_delay,
        retryable=is_network_error,
    )


def push_policy(
    request_retries: int = 0,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
) -> RetryPolicy:
    return RetryPolicy(
        max_retries=max(0, request_retries),
        base_delay=base_delay,
        max_delay=max_delay,
        retryable=is_network_error,
    )


async def with_retry(
    policy: RetryPolicy,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """
    Execute an async function under ``policy``.

    Args:
        policy: Retry policy (count, backoff, retryable predicate).
        func: Async callable to execute.
        sleep: Injected for tests.

    Raises:
        MpesaError: The last error once retries are exhausted, or immediately
            when the error is not retryable under the policy.
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except MpesaError as e:
            attempt += 1
            if not policy.should_retry(e, attempt):
                if attempt > 1:
                    logger.error("Giving up after %d attempts: %s", attempt, e)
                raise

            sleep_for = policy.delay_for(attempt)
            logger.warning(
                "Retriable error on attempt %d/%d: %s - sleeping %.1fs",
                attempt,
                policy.max_retries + 1,
                e,
                sleep_for,
            )
            await sleep(sleep_for)

"""
Retry utilities with exponential backoff for tool execution.

Tool steps are retried on genuine execution failures only; input problems
(missing or unusable arguments, unknown tools) fail immediately.
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """Raised when all attempts have failed."""

    def __init__(self, message: str, attempts: int, last_exception: Exception):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


# Tool steps: 3 attempts, sleeping 2^attempt seconds between them (1s, 2s)
TOOL_RETRY_CONFIG = {
    'max_attempts': 3,
    'initial_backoff': 1.0,
    'backoff_multiplier': 2.0,
    'max_backoff': 30.0,
    'jitter_percent': 0.0,
}


def calculate_backoff(
    attempt: int,
    initial_backoff: float,
    backoff_multiplier: float,
    max_backoff: float,
    jitter_percent: float = 0.0,
) -> float:
    """
    Calculate backoff time with exponential increase and optional jitter.

    Args:
        attempt: Attempt that just failed (0-indexed)
        initial_backoff: Base backoff in seconds
        backoff_multiplier: Exponential multiplier
        max_backoff: Maximum backoff cap
        jitter_percent: Random jitter range (0.25 = ±25%)

    Returns:
        Backoff time in seconds
    """
    backoff = min(initial_backoff * (backoff_multiplier ** attempt), max_backoff)

    if jitter_percent:
        jitter_range = backoff * jitter_percent
        backoff += random.uniform(-jitter_range, jitter_range)

    return max(0.0, backoff)


async def retry_async(
    func: Callable[[], Awaitable],
    config: dict,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    is_retriable: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
):
    """
    Await `func()` until it succeeds or `config['max_attempts']` is reached.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        config: Retry configuration dict
        exceptions: Exception types that count as a failed attempt
        is_retriable: Predicate; a False answer re-raises immediately
        on_retry: Optional callback(attempt, exception, backoff) before sleeping

    Returns:
        Result of the first successful attempt

    Raises:
        RetryExhausted: If every attempt fails
        Exception: If a non-retriable exception is raised
    """
    max_attempts = max(1, int(config['max_attempts']))
    last_exception: Optional[Exception] = None

    for attempt in range(max_attempts):
        try:
            return await func()
        except exceptions as e:
            last_exception = e

            if is_retriable is not None and not is_retriable(e):
                logger.warning(f"Non-retriable error on attempt {attempt + 1}: {e}")
                raise

            if attempt + 1 >= max_attempts:
                break

            backoff = calculate_backoff(
                attempt,
                config['initial_backoff'],
                config['backoff_multiplier'],
                config['max_backoff'],
                config.get('jitter_percent', 0.0),
            )

            logger.warning(
                f"Retriable error on attempt {attempt + 1}/{max_attempts}: {e}. "
                f"Retrying in {backoff:.2f}s"
            )

            if on_retry:
                on_retry(attempt, e, backoff)

            await asyncio.sleep(backoff)

    raise RetryExhausted(
        f"All {max_attempts} attempts failed. Last error: {last_exception}",
        attempts=max_attempts,
        last_exception=last_exception,
    )

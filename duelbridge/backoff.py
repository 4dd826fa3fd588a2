"""
Retry an async operation with exponential delay and jitter.
"""

import asyncio
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from . import constants
from .utils import debug_print

T = TypeVar("T")


def compute_delay(
    attempt: int,
    *,
    initial_delay: float = constants.BACKOFF_INITIAL_DELAY_SECONDS,
    max_delay: float = constants.BACKOFF_MAX_DELAY_SECONDS,
    factor: float = constants.BACKOFF_FACTOR,
    jitter: float = constants.BACKOFF_JITTER_RATIO,
) -> float:
    """Delay before retry number `attempt` (zero-based), jittered upward by at most `jitter`."""
    attempt = max(0, int(attempt))
    delay = min(initial_delay * (factor ** attempt), max_delay)
    if jitter > 0:
        delay += delay * random.uniform(0, jitter)
    return delay


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = constants.BACKOFF_MAX_ATTEMPTS,
    initial_delay: float = constants.BACKOFF_INITIAL_DELAY_SECONDS,
    max_delay: float = constants.BACKOFF_MAX_DELAY_SECONDS,
    factor: float = constants.BACKOFF_FACTOR,
    jitter: float = constants.BACKOFF_JITTER_RATIO,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    description: str = "operation",
) -> T:
    """
    Run `operation` until it succeeds or `max_attempts` is exhausted.

    The last exception is re-raised once attempts run out. Exceptions outside
    `retry_on` propagate immediately.
    """
    max_attempts = max(1, int(max_attempts))
    for attempt in range(max_attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= max_attempts - 1:
                debug_print(f"❌ {description} failed after {max_attempts} attempts: {e}")
                raise
            delay = compute_delay(
                attempt,
                initial_delay=initial_delay,
                max_delay=max_delay,
                factor=factor,
                jitter=jitter,
            )
            debug_print(
                f"🔁 {description} failed (attempt {attempt + 1}/{max_attempts}): {e}. Retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt + 1, e, delay)
            await asyncio.sleep(delay)
    raise RuntimeError(f"{description} did not run")

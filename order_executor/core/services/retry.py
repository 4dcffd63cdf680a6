import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

_logger = logging.getLogger("simple_retry")


async def simple_retry(
    fn: Callable[[], Awaitable[T]],
    retry: int = 3,
    delay_sec: float = 1.0,
    factor: float = 2.0,
    max_delay_sec: float = 3.0,
    jitter: float = 0.2,
    should_retry: Optional[Callable[[Exception], bool]] = None,
) -> T:
    """
    Await `fn()` up to `retry` times with exponential backoff + jitter.

    The last exception is re-raised once attempts are exhausted, or right away
    when `should_retry(exc)` says the failure is permanent.
    """
    attempts = max(1, int(retry))
    wait = delay_sec
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= attempts or (should_retry is not None and not should_retry(exc)):
                raise
            sleep_for = min(wait, max_delay_sec)
            sleep_for += sleep_for * jitter * random.random()
            _logger.debug("attempt %s/%s failed (%s), retrying in %.2fs", attempt, attempts, exc, sleep_for)
            await asyncio.sleep(sleep_for)
            wait = wait * factor
    raise RuntimeError("unreachable")

import asyncio
import functools
import random
from typing import Callable, Iterator, Tuple, Type

from advisor.utils.logger import logger


def backoff_delays(
    initial_delay: float,
    backoff_factor: float = 2.0,
    max_delay: float | None = None,
    jitter: bool = True,
) -> Iterator[float]:
    """Endless exponential backoff schedule, jittered to 50-150% of each step."""
    delay = initial_delay
    while True:
        step = delay if max_delay is None else min(delay, max_delay)
        yield step * (0.5 + random.random()) if jitter else step
        delay *= backoff_factor


def retry(
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float | None = None,
    jitter: bool = True,
    label: str | None = None,
):
    """Retry an async callable on `exceptions` with exponential backoff.

    `max_retries=0` runs it exactly once. Other exceptions, including
    cancellation, propagate immediately.
    """
    def decorator(func: Callable):
        name = label or getattr(func, "__name__", "call")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            delays = backoff_delays(initial_delay, backoff_factor, max_delay, jitter)
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        logger.warning("retry_limit_reached", func=name, attempts=attempt + 1, error=str(e))
                        raise
                    attempt += 1
                    delay = next(delays)
                    logger.info("retrying_call", func=name, attempt=attempt, delay=round(delay, 2), error=str(e))
                    await asyncio.sleep(delay)

        return wrapper
    return decorator

import asyncio
import time

from .errors import DeploymentTimeout, ProviderError
from .logger import get_logger

logger = get_logger("polling")


def check_timeout(start, timeout_s, now=None):
    """True once more than ``timeout_s`` seconds have passed since ``start``"""
    if now is None:
        now = time.time()
    return (now - start) > timeout_s


def backoff_delay(attempt, base_s=1.0, step_s=2.0):
    """Linear backoff: seconds to wait after the ``attempt``-th failure (1-based)"""
    return base_s + step_s * attempt


async def wait_until(probe, config, what, clock=time.time):
    """Call ``probe`` until it returns True.

    The deadline is checked before every probe, so a run that is already
    past its timeout fails without sleeping another interval.
    """
    while True:
        if check_timeout(config.start_timestamp, config.timeout_s, now=clock()):
            raise DeploymentTimeout(config.timeout_s, what)

        if await probe():
            return

        logger.info(f"{what} is not finished yet, waiting {config.polling_interval_s}s")
        await asyncio.sleep(config.polling_interval_s)


async def retry_call(func, attempts, base_s, step_s, what):
    """Run ``func`` up to ``attempts`` times, sleeping ``backoff_delay`` between failures.

    Only retryable provider errors are retried; the last one propagates.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except ProviderError as e:
            if not e.retryable or attempt >= attempts:
                logger.error(f"{what} failed after {attempt} attempt(s): {e}")
                raise
            delay = backoff_delay(attempt, base_s, step_s)
            logger.warning(f"{what} attempt {attempt} failed: {e}; retrying in {delay}s")
            await asyncio.sleep(delay)

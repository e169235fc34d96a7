import asyncio
import logging

log = logging.getLogger("yamen_bridge.aio")


def linear_backoff(base: float):
    """Delay function: attempt N waits N * base seconds."""
    def delay(attempt):
        return attempt * base
    return delay


async def retry_async(fn, attempts: int, delay, retry_on=(Exception,), label="call"):
    """
    Await `fn()` up to `attempts` times.

    `delay(attempt)` gives the pause after failed attempt N (1-based). The last
    exception is re-raised once the budget is spent.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            log.warning("[RETRY %d/%d] %s failed: %s", attempt, attempts, label, e)
            if attempt == attempts:
                raise
            pause = delay(attempt)
            if pause > 0:
                log.debug("Retrying %s in %.2fs", label, pause)
                await asyncio.sleep(pause)


async def run_with_deadline(aw, timeout: float, default=None):
    """
    Await `aw` for at most `timeout` seconds.

    Returns `default` when the deadline passes; the pending work is cancelled.
    Blocking calls already handed to an executor keep running in their thread,
    only the wait is abandoned.
    """
    try:
        return await asyncio.wait_for(aw, timeout)
    except asyncio.TimeoutError:
        return default

"""
Bounded retry for may-fail calls (durable store, message renderer).

One retry with backoff, then the last error propagates so the caller can
log and drop the occurrence for this cycle.
"""

import time
from typing import Callable, Tuple, Type, TypeVar

from rhythm.logger import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float = 30.0) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped at max_seconds."""
    return min(max(0.0, base_seconds) * (2 ** max(0, attempt)), max_seconds)


def call_with_retry(fn: Callable[[], T], *, attempts: int = 2, backoff: float = 0.5,
                    what: str = "operation",
                    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
                    sleep: Callable[[float], None] = time.sleep) -> T:
    """Call fn, retrying up to ``attempts`` total tries on ``retry_on`` errors."""
    attempts = max(1, int(attempts))
    for attempt in range(attempts):
        try:
            return fn()
        except retry_on as e:
            if attempt + 1 >= attempts:
                logger.error(f"{what} failed after {attempts} attempt(s): {e}")
                raise
            delay = backoff_delay(attempt, backoff)
            logger.warning(f"{what} failed ({e}), retrying in {delay:.1f}s")
            sleep(delay)
    raise AssertionError("unreachable")


def retry_settings(config) -> dict:
    """Read retry knobs from config as call_with_retry kwargs."""
    if config is None:
        return {"attempts": 2, "backoff": 0.5}
    return {
        "attempts": config.get("retry.attempts", 2),
        "backoff": config.get("retry.backoff_seconds", 0.5),
    }

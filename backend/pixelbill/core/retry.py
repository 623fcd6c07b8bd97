"""Bounded retry with exponential backoff"""
import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from pixelbill.core.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based), doubling each time and capped at ``max_delay``"""
    return min(max_delay, base_delay * (2 ** attempt))


def retry_with_backoff(
    func: Callable[[], T],
    *,
    max_attempts: int,
    base_delay: float,
    max_delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    retry_if: Optional[Callable[[T], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call ``func`` until it succeeds or ``max_attempts`` is used up.

    A call fails when it raises one of ``retry_on`` or when ``retry_if(result)``
    is true (e.g. "row not there yet"). Exceptions outside ``retry_on`` propagate
    immediately. Exhaustion raises ``RetryExhaustedError`` chained to the last
    exception, if any.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Optional[BaseException] = None
    for attempt in range(max_attempts):
        try:
            result = func()
        except retry_on as e:
            last_error = e
            logger.warning(f"{label} failed (attempt {attempt + 1}/{max_attempts}): {e}")
        else:
            if retry_if is None or not retry_if(result):
                return result
            last_error = None
            logger.info(f"{label} not ready yet (attempt {attempt + 1}/{max_attempts})")

        if attempt < max_attempts - 1:
            sleep(backoff_delay(attempt, base_delay, max_delay))

    retry_after = backoff_delay(max_attempts - 1, base_delay, max_delay)
    raise RetryExhaustedError(
        f"{label} gave up after {max_attempts} attempts",
        attempts=max_attempts,
        retry_after=retry_after,
    ) from last_error

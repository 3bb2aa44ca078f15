"""Resilience utilities — retry with backoff around external calls."""

from __future__ import annotations

import logging
import random
import time
from functools import wraps
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

RetryHook = Callable[[str, int, int, Exception, float], None]


# ---------------------------------------------------------------------------
# Retry with exponential backoff
# ---------------------------------------------------------------------------


def retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    on_retry: Optional[RetryHook] = None,
) -> Callable:
    """Decorator: retry a function with exponential backoff.

    Args:
        max_attempts: Total attempts (including first try).
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay cap in seconds.
        backoff_factor: Multiplier applied to delay each retry. 1.0 gives a fixed delay.
        jitter: Add random jitter (±25%) between attempts.
        retryable_exceptions: Exception types that trigger retry.
        on_retry: Called as ``on_retry(name, attempt, max_attempts, exc, delay)``
            before each sleep, e.g. to print a console warning.
    """
    def decorator(func: Callable) -> Callable:
        name = getattr(func, "__name__", "call")

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = base_delay
            last_exception: Exception | None = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_exception = e
                    if attempt == max_attempts:
                        logger.error(
                            "%s failed after %d attempts: %s",
                            name, max_attempts, e,
                        )
                        raise

                    actual_delay = delay
                    if jitter:
                        actual_delay *= 0.75 + random.random() * 0.5

                    logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %.1fs",
                        name, attempt, max_attempts, e, actual_delay,
                    )
                    if on_retry is not None:
                        on_retry(name, attempt, max_attempts, e, actual_delay)
                    time.sleep(actual_delay)
                    delay = min(delay * backoff_factor, max_delay)

            raise last_exception  # type: ignore[misc]
        return wrapper
    return decorator


def console_retry_hook(name: str, attempt: int, max_attempts: int, exc: Exception, delay: float) -> None:
    """Print a yellow status line for a failed attempt."""
    from .common import print_warning

    print_warning(
        f"{name}: attempt {attempt}/{max_attempts} failed ({exc}); retrying in {delay:.1f}s"
    )


def call_with_retry(
    func: Callable[..., Any],
    *args: Any,
    attempts: Optional[int] = None,
    delay: Optional[float] = None,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    **kwargs: Any,
) -> Any:
    """Run ``func(*args, **kwargs)`` under the configured retry policy."""
    from .config import settings

    wrapped = retry(
        max_attempts=attempts if attempts is not None else settings.retry_attempts,
        base_delay=delay if delay is not None else settings.retry_delay,
        retryable_exceptions=retryable_exceptions,
        on_retry=console_retry_hook,
    )(func)
    return wrapped(*args, **kwargs)

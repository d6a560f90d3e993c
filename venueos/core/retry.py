import functools
import random
import time
from typing import Any, Callable

import httpx
import structlog
from sqlalchemy.exc import OperationalError

from ..config import settings
from ..errors import TransientError

logger = structlog.get_logger("venueos.retry")

DEFAULT_RETRY_ON: tuple[type[BaseException], ...] = (
    OperationalError,
    httpx.TransportError,
    TransientError,
)


def _backoff_seconds(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(max_delay, base_delay * (2 ** max(0, attempt - 1)))
    return delay + random.uniform(0, delay * 0.1)


def with_retry(
    fn: Callable[..., Any],
    *args,
    attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    retry_on: tuple[type[BaseException], ...] = DEFAULT_RETRY_ON,
    on_retry: Callable[[BaseException], None] | None = None,
    **kwargs,
) -> Any:
    """
    Calls fn(*args, **kwargs), retrying transient failures with exponential backoff.

    Non-transient exceptions propagate immediately. After the last attempt the
    transient exception is re-raised unchanged. on_retry runs before each retry,
    e.g. to roll back a failed session.
    """
    max_attempts = max(1, int(attempts or settings.RETRY_MAX_ATTEMPTS))
    base = float(settings.RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay)
    cap = float(settings.RETRY_MAX_DELAY_SECONDS if max_delay is None else max_delay)

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(*args, **kwargs)
        except retry_on as exc:
            if attempt >= max_attempts:
                logger.error(
                    "retry_exhausted",
                    operation=getattr(fn, "__name__", "call"),
                    attempts=attempt,
                    error=str(exc),
                )
                raise
            delay = _backoff_seconds(attempt, base, cap)
            logger.warning(
                "retry_scheduled",
                operation=getattr(fn, "__name__", "call"),
                attempt=attempt,
                delay_s=round(delay, 3),
                error=str(exc),
            )
            if on_retry is not None:
                on_retry(exc)
            time.sleep(delay)


def retryable(**retry_kwargs):
    def decorator(fn: Callable):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return with_retry(fn, *args, **retry_kwargs, **kwargs)
        return wrapper
    return decorator

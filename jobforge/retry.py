"""Retry decorator with exponential backoff for outbound calls."""
from __future__ import annotations

import functools
import random
import time
from typing import Any, Callable, Tuple, Type

import requests

from jobforge.log import get_logger

log = get_logger(__name__)


def is_client_error(exc: BaseException) -> bool:
    """True for HTTP 4xx responses: a bad URL or key will not fix itself."""
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return 400 <= exc.response.status_code < 500
    return False


def retry(
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    retryable: Tuple[Type[BaseException], ...] = (requests.RequestException, OSError),
    giveup: Callable[[BaseException], bool] = is_client_error,
) -> Callable:
    """Retry the wrapped call on ``retryable`` errors unless ``giveup`` says stop.

    The final failure is re-raised unchanged so callers can record it
    against the item they were processing.
    """

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except retryable as exc:
                    if attempt == max_attempts or giveup(exc):
                        log.debug(
                            "%s giving up after %d attempt(s): %s",
                            fn.__qualname__, attempt, exc,
                        )
                        raise
                    delay = min(base_delay * (backoff_factor ** (attempt - 1)), max_delay)
                    if jitter:
                        delay *= 0.5 + random.random()
                    log.warning(
                        "%s attempt %d/%d failed (%s), retrying in %.1fs",
                        fn.__qualname__, attempt, max_attempts, exc, delay,
                    )
                    time.sleep(delay)
            raise AssertionError("unreachable")

        return wrapper

    return decorator

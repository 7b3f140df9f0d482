# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import time
import functools
from typing import Callable, Optional


class RetryError(RuntimeError):
    pass


def retry(
    *,
    retries: int,
    delay: float,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Callable[[int, Exception], None] | None = None,
    reraise: bool = False,
):
    """
    Retry decorator for idempotent operations.

    retries: number of attempts
    delay: seconds between attempts
    retry_on: exception types to retry
    should_retry: predicate on the exception; False stops retrying at once
    on_retry: callback(attempt, exception)
    reraise: raise the last exception itself instead of RetryError
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            last_exc = None
            attempts = max(retries, 1)
            for attempt in range(1, attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    if should_retry is not None and not should_retry(exc):
                        raise
                    if attempt == attempts:
                        break
                    if on_retry:
                        on_retry(attempt, exc)
                    time.sleep(delay)
            if reraise:
                raise last_exc
            raise RetryError(f"{fn.__name__} failed after {attempts} attempts") from last_exc
        return wrapper
    return decorator

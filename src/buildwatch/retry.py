"""Bounded retry with a fixed delay between attempts."""

from __future__ import annotations

import time
from typing import Callable, Tuple, Type, TypeVar

from .observability import log_warning

T = TypeVar("T")


def run_with_retry(
    operation: Callable[[], T],
    max_retries: int,
    delay: float,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or the retry budget is spent.

    The operation is attempted once, then up to ``max_retries`` more times,
    waiting ``delay`` seconds between attempts. ``max_retries=3`` therefore
    means at most four calls.

    Args:
        operation: Zero-argument callable to invoke
        max_retries: Additional attempts allowed after the first failure
        delay: Seconds to wait before each retry
        retry_on: Exception types that count as retryable; anything else
            propagates immediately
        sleep: Sleep function (injectable for tests)
        label: Name used in retry log lines

    Returns:
        Whatever ``operation`` returns on its first successful call

    Raises:
        The last exception raised by ``operation``, unchanged
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")

    attempt = 0
    while True:
        try:
            return operation()
        except retry_on as exc:
            if attempt >= max_retries:
                raise
            attempt += 1
            log_warning(
                f"{label} failed, retry {attempt}/{max_retries} in {delay:g}s: {exc}",
            )
            if delay > 0:
                sleep(delay)

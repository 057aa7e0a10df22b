"""Bounded retry with exponential backoff for transient storage errors."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from core.config import RetryConfig
from core.errors import TransientStorageError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    operation: Callable[[], T],
    retry: RetryConfig,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying TransientStorageError up to ``retry.attempts`` times.

    Only transient storage errors are retried; anything else propagates on
    the first failure. The last TransientStorageError is re-raised once the
    attempts are exhausted.
    """

    attempt = 0
    while True:
        try:
            return operation()
        except TransientStorageError as exc:
            attempt += 1
            if attempt >= retry.attempts:
                LOGGER.error("Giving up on %s after %d attempt(s): %s", description, attempt, exc)
                raise
            wait_time = retry.base_delay * (2 ** (attempt - 1))
            LOGGER.warning(
                "Transient storage error during %s (attempt %d/%d). Sleeping %.2fs: %s",
                description,
                attempt,
                retry.attempts,
                wait_time,
                exc,
            )
            sleep(wait_time)

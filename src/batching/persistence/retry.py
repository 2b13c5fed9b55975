"""Retry helpers for store calls."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from ..errors import ConflictError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[..., T],
    *args,
    retries: int,
    backoff_seconds: float,
    **kwargs,
) -> T:
    """Call ``func`` retrying ``StoreError`` with linear backoff."""
    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except StoreError as exc:
            attempt += 1
            if attempt > retries:
                raise
            wait_time = backoff_seconds * attempt
            logger.debug(
                f"Store call {getattr(func, '__name__', func)} failed, retrying in {wait_time:.1f}s "
                f"(attempt {attempt}/{retries}): {exc}"
            )
            time.sleep(wait_time)


def retry_on_conflict(operation: Callable[[], T], *, attempts: int) -> T:
    """Re-run ``operation`` after a lost compare-and-swap.

    ``operation`` must re-fetch whatever state it depends on on every call.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except ConflictError as exc:
            attempt += 1
            if attempt > attempts:
                raise
            logger.info(f"Conditional write conflicted, re-fetching (attempt {attempt}/{attempts}): {exc}")

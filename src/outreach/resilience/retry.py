"""Tenacity retry decorator for SQLite lock contention.

Two overlapping ticks (or a tick and an inbound webhook) may briefly hold the
write lock at the same time.  Conditional writes are retried a bounded number
of times with exponential backoff and jitter; anything else propagates.

External calls (mailer, reasoner) are deliberately NOT wrapped here: their
failures belong to the command bus attempt counter.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from typing import Any, TypeVar

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Any])


def is_lock_contention(exc: BaseException) -> bool:
    """Return True for the transient ``database is locked``/``busy`` errors."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _before_sleep_log(retry_state: RetryCallState) -> None:
    """Log a warning before each retry attempt.

    Args:
        retry_state: Tenacity retry state with attempt info.
    """
    operation = getattr(retry_state.fn, "_operation", "unknown") if retry_state.fn else "unknown"
    logger.warning(
        "sqlite_locked_retrying",
        operation=operation,
        attempt=retry_state.attempt_number,
        wait=retry_state.next_action.sleep if retry_state.next_action else 0,
    )


def retry_on_locked(operation: str, attempts: int = 5) -> Callable[[F], F]:
    """Create a retry decorator for a store write.

    Returns a tenacity retry decorator configured with:
    - *attempts* attempts maximum
    - Exponential backoff with jitter (50ms initial, 2s max)
    - Warning log before each retry
    - Original exception re-raised after exhaustion

    Args:
        operation: Human-readable name for the write (used in logs).
        attempts: Maximum number of attempts, including the first.

    Returns:
        A decorator that wraps the function with retry logic.
    """

    def decorator(func: F) -> F:
        func._operation = operation  # type: ignore[attr-defined]

        wrapped = retry(
            retry=retry_if_exception(is_lock_contention),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential_jitter(initial=0.05, max=2, jitter=0.1),
            before_sleep=_before_sleep_log,
            reraise=True,
        )(func)

        return wrapped

    return decorator

"""Resilience infrastructure for store writes under lock contention."""

from outreach.resilience.retry import is_lock_contention, retry_on_locked

__all__ = [
    "is_lock_contention",
    "retry_on_locked",
]

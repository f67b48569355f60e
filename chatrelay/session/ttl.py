"""
Expiry policy for conversation sessions.

Pure functions only; the current time is always passed in so callers
(and tests) decide which clock is authoritative.
"""

from __future__ import annotations

import time
from typing import Callable

Clock = Callable[[], float]


def system_clock() -> float:
    return time.time()


def expires_at(last_accessed: float, ttl_seconds: float) -> float:
    return last_accessed + ttl_seconds


def is_expired(last_accessed: float, now: float, ttl_seconds: float) -> bool:
    """
    A session is expired once it has been idle for strictly more than the TTL.
    """
    return now - last_accessed > ttl_seconds


def remaining_ttl(last_accessed: float, now: float, ttl_seconds: float) -> float:
    return max(0.0, expires_at(last_accessed, ttl_seconds) - now)


__all__ = ["Clock", "expires_at", "is_expired", "remaining_ttl", "system_clock"]

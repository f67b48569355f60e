from .store import SessionStore
from .sweeper import SweepScheduler
from .ttl import Clock, expires_at, is_expired, remaining_ttl, system_clock

__all__ = [
    "Clock",
    "SessionStore",
    "SweepScheduler",
    "expires_at",
    "is_expired",
    "remaining_ttl",
    "system_clock",
]

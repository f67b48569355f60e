"""
Per-client rate limiting for the HTTP API.
"""

import time
from collections import defaultdict
from typing import Callable, Iterable

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from chatrelay.errors import error_response

# Idle clients are forgotten every this many checked requests.
CLEANUP_EVERY = 1000

# Proxy headers consulted before the socket peer, most trusted first.
PROXY_ADDRESS_HEADERS = ("X-Forwarded-For", "X-Real-IP")


def client_address(request: Request) -> str:
    for header in PROXY_ADDRESS_HEADERS:
        value = request.headers.get(header)
        if value:
            # X-Forwarded-For lists the originating client first.
            return value.split(",", 1)[0].strip()
    return request.client.host if request.client else "unknown"


class InMemoryRateLimiter:
    """
    Sliding-window limiter kept in process memory (single instance only).

    Records request timestamps per key and counts those inside the window.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._hits: dict[str, list[float]] = defaultdict(list)

    async def is_rate_limited(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
    ) -> tuple[bool, int, int]:
        """
        Check `key` against the limit, recording the request when it is let through.

        Returns (limited, remaining, reset_time) where reset_time is the epoch
        second at which the oldest counted request leaves the window.
        """
        now = self._clock()
        window = [ts for ts in self._hits[key] if ts > now - window_seconds]
        limited = len(window) >= max_requests
        if not limited:
            window.append(now)
        self._hits[key] = window

        reset_at = int(window[0] + window_seconds)
        return limited, max(0, max_requests - len(window)), reset_at

    def cleanup_old_entries(self, max_age_seconds: int) -> int:
        """Forget keys with no request newer than max_age_seconds; returns how many."""
        horizon = self._clock() - max_age_seconds
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= horizon]
        for key in idle:
            self._hits.pop(key, None)
        return len(idle)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Limits requests per client address; exempt paths (health checks) pass untouched.
    """

    def __init__(
        self,
        app: ASGIApp,
        max_requests: int = 200,
        window_seconds: int = 15 * 60,
        exempt_paths: Iterable[str] = ("/health", "/favicon.ico"),
        limiter: InMemoryRateLimiter | None = None,
        key_func: Callable[[Request], str] = client_address,
    ):
        super().__init__(app)
        self.limiter = limiter or InMemoryRateLimiter()
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.exempt_paths = frozenset(exempt_paths)
        self.key_func = key_func
        self._checked = 0

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        self._checked += 1
        if self._checked % CLEANUP_EVERY == 0:
            self.limiter.cleanup_old_entries(self.window_seconds)

        limited, remaining, reset_at = await self.limiter.is_rate_limited(
            self.key_func(request), self.max_requests, self.window_seconds
        )
        quota = {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(reset_at),
        }

        if limited:
            retry_after = max(0, reset_at - int(time.time()))
            return error_response(
                status.HTTP_429_TOO_MANY_REQUESTS,
                code="RATE_LIMIT_EXCEEDED",
                message="Too many requests from this IP, please try again later.",
                details={"retryAfter": retry_after},
                headers={**quota, "Retry-After": str(retry_after)},
            )

        response = await call_next(request)
        response.headers.update(quota)
        return response


__all__ = ["InMemoryRateLimiter", "RateLimitMiddleware", "client_address"]

from .rate_limiter import InMemoryRateLimiter, RateLimitMiddleware, client_address

__all__ = ["InMemoryRateLimiter", "RateLimitMiddleware", "client_address"]

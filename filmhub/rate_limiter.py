# rate_limiter.py
"""
Moving-window rate limiting for sensitive endpoints, backed by `limits`.

Used as a FastAPI dependency:

    login_limiter = RateLimiter(10, 15 * 60, scope="login")

    @router.post("/login", dependencies=[Depends(login_limiter)])

Counters live in process memory; behind several workers each one counts on its own.
"""
import logging
import time

from fastapi import HTTPException, Request, status
from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from filmhub import config

logger = logging.getLogger(__name__)

_limiters = []


class RateLimiter:
    def __init__(self, max_requests: int, window_seconds: int, scope: str, message: str = None):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.scope = scope
        self.message = message or "Too many requests. Please try again later."
        self.item = RateLimitItemPerSecond(max_requests, window_seconds)
        # expired windows are dropped by the storage itself
        self.storage = MemoryStorage()
        self.strategy = MovingWindowRateLimiter(self.storage)
        _limiters.append(self)

    def hit(self, key: str) -> float:
        """Record a request. Returns 0 when allowed, else seconds until retry."""
        if self.strategy.hit(self.item, key):
            return 0
        reset_time = self.strategy.get_window_stats(self.item, key).reset_time
        return max(reset_time - time.time(), 1)

    def reset(self) -> None:
        self.storage.reset()

    async def __call__(self, request: Request):
        if not config.RATE_LIMIT_ENABLED:
            return

        client = request.client.host if request.client else "unknown"
        retry_after = self.hit(f"{self.scope}:{client}")
        if retry_after:
            logger.warning(f"Rate limit hit: scope={self.scope}, client={client}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={"error": self.message, "code": "RATE_LIMITED",
                        "retry_after": int(retry_after)},
                headers={"Retry-After": str(int(retry_after))},
            )


def reset_all() -> None:
    """Clear every limiter (tests, admin maintenance)."""
    for limiter in _limiters:
        limiter.reset()

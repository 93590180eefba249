"""
Moving-window rate limiter for the public API.

Every /api/ request is counted against the client address: at most
API_RATE_LIMIT_MAX_REQUESTS requests in any API_RATE_LIMIT_WINDOW_SECONDS
window. Counting uses the `limits` moving-window strategy (the engine under
slowapi) over in-process memory storage, whose own timer expires idle keys.
Each uvicorn worker limits independently. Per-endpoint limits (login, upload)
are handled by slowapi on top of this.
"""

import logging
import math
import time
from typing import Dict, NamedTuple, Optional

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import MovingWindowRateLimiter
from starlette.requests import Request

from api.common import error_response, get_real_ip
from api.errors import ERROR_MESSAGES
from config import (
    API_RATE_LIMIT_ENABLED,
    API_RATE_LIMIT_MAX_REQUESTS,
    API_RATE_LIMIT_WINDOW_SECONDS,
)

logger = logging.getLogger(__name__)


class RateLimitResult(NamedTuple):
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds when the oldest counted request leaves the window


class APIRateLimiter:
    """One moving-window limit applied per client key."""

    def __init__(
        self,
        max_requests: int = API_RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = API_RATE_LIMIT_WINDOW_SECONDS,
        storage: Optional[Storage] = None,
    ):
        self.item = RateLimitItemPerSecond(max_requests, window_seconds, namespace="api")
        self.storage = storage or MemoryStorage()
        self.strategy = MovingWindowRateLimiter(self.storage)

    @property
    def max_requests(self) -> int:
        return self.item.amount

    @property
    def window_seconds(self) -> int:
        return self.item.get_expiry()

    @staticmethod
    def key_for(client_ip: str) -> str:
        return f"rate_limit:{client_ip or 'unknown'}"

    def check(self, key: str) -> RateLimitResult:
        """Count one request for key and report whether it is allowed. Rejected requests are not counted."""
        allowed = self.strategy.hit(self.item, key)
        stats = self.strategy.get_window_stats(self.item, key)
        return RateLimitResult(allowed, max(0, stats.remaining), stats.reset_time)

    def reset(self) -> None:
        self.storage.reset()


# Shared by every RateLimitMiddleware without an explicit limiter
api_rate_limiter = APIRateLimiter()


def _limit_headers(limiter: APIRateLimiter, result: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(limiter.max_requests),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at * 1000)),
    }


class RateLimitMiddleware:
    """
    ASGI middleware applying the moving window to /api/ paths.

    Allowed responses carry X-RateLimit-* headers; rejected requests get a 429
    envelope with the same headers plus Retry-After.
    """

    def __init__(
        self,
        app,
        limiter: Optional[APIRateLimiter] = None,
        enabled: bool = API_RATE_LIMIT_ENABLED,
        path_prefix: str = "/api/",
    ):
        self.app = app
        self.limiter = limiter or api_rate_limiter
        self.enabled = enabled
        self.path_prefix = path_prefix

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or not self.enabled:
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        if not path.startswith(self.path_prefix) or scope.get("method") == "OPTIONS":
            await self.app(scope, receive, send)
            return

        client_ip = get_real_ip(Request(scope))
        result = self.limiter.check(self.limiter.key_for(client_ip))
        headers = _limit_headers(self.limiter, result)

        if not result.allowed:
            retry_after = max(1, math.ceil(result.reset_at - time.time()))
            logger.warning(f"API rate limit exceeded for {client_ip} on {path}")
            response = error_response(
                ERROR_MESSAGES["rate_limited"],
                429,
                headers={**headers, "Retry-After": str(retry_after)},
            )
            await response(scope, receive, send)
            return

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                raw = list(message.get("headers", []))
                raw.extend((k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers.items())
                message = {**message, "headers": raw}
            await send(message)

        await self.app(scope, receive, send_with_headers)


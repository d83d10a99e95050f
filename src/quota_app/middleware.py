"""
Per-client rate limiting for state-changing requests.
"""

import math

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from quota_library import FixedWindowRateLimiter

UNCOUNTED_METHODS = {"GET", "HEAD", "OPTIONS"}


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects a client's non-GET requests beyond the limiter's window budget."""

    def __init__(self, app, limiter: FixedWindowRateLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):
        if request.method.upper() in UNCOUNTED_METHODS:
            return await call_next(request)

        client_ip = get_client_ip(request)
        if not self.limiter.check(client_ip):
            retry_after = max(1, math.ceil(self.limiter.retry_after(client_ip)))
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests. Please try again later."},
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)

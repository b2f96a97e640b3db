"""
Rate limiting gate applied to every request before routing.

Implemented as plain ASGI so the response stream of the wrapped app reaches
the server untouched: a relay that fails mid-body must end the connection
instead of being finished off as a complete response.
"""

import logging

from fastapi import Request
from starlette.types import ASGIApp, Receive, Scope, Send

from search_proxy.proxy.errors import RateLimited, error_response
from .sliding_window import SlidingWindowRateLimiter

logger = logging.getLogger("uvicorn.error")


def client_identity(request: Request) -> str:
    """First X-Forwarded-For entry, falling back to the socket peer address."""
    forwarded_for = request.headers.get("x-forwarded-for", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else ""


class RateLimitMiddleware:
    def __init__(self, app: ASGIApp, rate_limiter: SlidingWindowRateLimiter):
        self.app = app
        self._rate_limiter = rate_limiter

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        identity = client_identity(request)
        if not self._rate_limiter.check(identity):
            logger.warning(
                f"[RateLimit] Rejected {request.method} {request.url.path} from {identity or 'unknown'}"
            )
            response = error_response(RateLimited())
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)

from .sliding_window import SlidingWindowRateLimiter
from .middleware import RateLimitMiddleware, client_identity

__all__ = ["SlidingWindowRateLimiter", "RateLimitMiddleware", "client_identity"]

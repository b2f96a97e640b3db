"""
Failures of the proxy pipeline.

Every error carries the HTTP status it maps to and the plain-text message the
client receives, so the application can render any of them with one handler.
"""

from fastapi.responses import PlainTextResponse


class ProxyError(Exception):
    """Base class for failures that end a proxied request."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class RateLimited(ProxyError):
    """Raised when a client identity exceeded its request budget."""

    status_code = 429
    default_message = "Too many requests"


class InvalidTarget(ProxyError):
    """Raised when the target URL is missing, malformed or not http(s)."""

    status_code = 400
    default_message = "Invalid target URL"


class UpstreamError(ProxyError):
    """Raised when the remote host could not be reached or answered badly."""

    status_code = 502
    default_message = "Bad gateway"


class InternalError(ProxyError):
    status_code = 500
    default_message = "Internal server error"


def error_response(error: ProxyError) -> PlainTextResponse:
    """Render a pipeline failure as the plain-text response the client receives."""
    return PlainTextResponse(error.message, status_code=error.status_code)

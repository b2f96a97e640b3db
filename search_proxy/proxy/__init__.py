from .errors import (
    ProxyError,
    RateLimited,
    InvalidTarget,
    UpstreamError,
    InternalError,
)
from .url_validation import is_http_url
from .html_rewriter import rewrite_html
from .upstream import ProxyRequest, fetch_upstream

__all__ = [
    "ProxyError",
    "RateLimited",
    "InvalidTarget",
    "UpstreamError",
    "InternalError",
    "is_http_url",
    "rewrite_html",
    "ProxyRequest",
    "fetch_upstream",
]

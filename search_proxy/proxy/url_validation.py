import httpx

HTTP_SCHEMES = ("http", "https")


def is_http_url(candidate) -> bool:
    """Return True if candidate is an absolute http:// or https:// URL."""
    if not isinstance(candidate, str) or not candidate:
        return False
    try:
        parsed = httpx.URL(candidate)
    except (httpx.InvalidURL, TypeError, ValueError):
        return False
    return parsed.scheme in HTTP_SCHEMES and bool(parsed.host)

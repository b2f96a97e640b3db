import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Mapping, Optional

import httpx
from fastapi.responses import HTMLResponse, Response, StreamingResponse
from opentelemetry import trace

from search_proxy.vars import PROXY_TIMEOUT, USER_AGENT
from .errors import InvalidTarget, UpstreamError
from .html_rewriter import rewrite_html
from .url_validation import HTTP_SCHEMES

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
NO_STORE = {"Cache-Control": "no-store"}

# Hop-by-hop headers that should NOT be relayed (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# The remote host never sees the client's cookies or original address
STRIPPED_REQUEST_HEADERS = {"cookie", "x-forwarded-for"}
STRIPPED_RESPONSE_HEADERS = {"set-cookie"}


@dataclass(frozen=True)
class ProxyRequest:
    """A single outbound fetch the proxy performs on behalf of a client."""

    target_url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


def parse_target(target_url: str) -> httpx.URL:
    """Parse the target URL, rejecting anything that is not absolute http(s)."""
    try:
        url = httpx.URL(target_url)
    except (httpx.InvalidURL, TypeError, ValueError) as e:
        raise InvalidTarget() from e
    if url.scheme not in HTTP_SCHEMES or not url.host:
        raise InvalidTarget()
    return url


def prepare_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """
    Merge caller headers over the proxy defaults and drop the headers that
    would leak client identity upstream.

    Header names are compared case-insensitively, so a caller supplied
    "user-agent" replaces the default "User-Agent".
    """
    merged = {"User-Agent": USER_AGENT, "Accept": DEFAULT_ACCEPT}
    for name, value in (headers or {}).items():
        for existing in [k for k in merged if k.lower() == name.lower()]:
            del merged[existing]
        merged[name] = value

    return {
        name: value
        for name, value in merged.items()
        if name.lower() not in STRIPPED_REQUEST_HEADERS
    }


def is_html(content_type: str) -> bool:
    return "text/html" in (content_type or "").lower()


def opaque_response_headers(upstream_headers: Mapping[str, str]) -> Dict[str, str]:
    """Headers relayed to the client for content streamed through unmodified."""
    headers = {}
    for name, value in upstream_headers.items():
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS or name_lower in STRIPPED_RESPONSE_HEADERS:
            continue
        if name_lower == "cache-control":
            continue
        headers[name] = value
    headers.update(NO_STORE)
    return headers


async def relay_body(
    upstream: httpx.Response, client: httpx.AsyncClient, target: str
) -> AsyncIterator[bytes]:
    """
    Yield the upstream body byte-for-byte.

    The upstream response and its client are released however the relay ends:
    exhausted, failed, or closed early because the client went away.
    """
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        # Headers are already on the wire; re-raising makes the server drop the connection
        logger.error(f"[Proxy] Upstream stream from {target} failed mid-response: {e}")
        raise
    finally:
        await upstream.aclose()
        await client.aclose()


async def buffer_and_rewrite(
    upstream: httpx.Response, client: httpx.AsyncClient, target: str
) -> Response:
    """
    Read the whole HTML document, rewrite it and answer with 200.

    The upstream status is not preserved on this path.
    """
    try:
        body = await upstream.aread()
    except httpx.HTTPError as e:
        logger.error(f"[Proxy] Failed reading HTML from {target}: {e}")
        raise UpstreamError() from e
    finally:
        await upstream.aclose()
        await client.aclose()

    text = body.decode("utf-8", errors="replace")
    return HTMLResponse(content=rewrite_html(text), status_code=200, headers=NO_STORE)


async def fetch_upstream(proxy_request: ProxyRequest) -> Response:
    """
    Fetch the target on behalf of the client.

    HTML responses are buffered and rewritten so that links and forms route
    back through the proxy. Anything else is streamed through with the
    upstream status and headers, minus Set-Cookie.

    Raises:
        InvalidTarget: the target URL cannot be parsed or is not http(s)
        UpstreamError: the remote host could not be reached
    """
    url = parse_target(proxy_request.target_url)
    headers = prepare_headers(proxy_request.headers)
    target = str(url)

    with tracer.start_as_current_span("proxy_request") as span:
        span.set_attribute("proxy.target_url", target)
        span.set_attribute("proxy.method", proxy_request.method)

        logger.debug(f"[Proxy] {proxy_request.method} {target}")

        # Redirects are relayed as-is, not followed
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(PROXY_TIMEOUT),
            follow_redirects=False,
        )
        try:
            request = client.build_request(
                method=proxy_request.method,
                url=url,
                headers=headers,
                content=proxy_request.body or None,
            )
            upstream = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            logger.error(f"[Proxy] Upstream error for {target}: {e}")
            span.set_attribute("proxy.error", type(e).__name__)
            raise UpstreamError() from e
        except BaseException:
            await client.aclose()
            raise

        span.set_attribute("proxy.status_code", upstream.status_code)
        content_type = upstream.headers.get("content-type", "")
        logger.info(
            f"[Proxy] {proxy_request.method} {target} -> {upstream.status_code} ({content_type or 'no content-type'})"
        )

        if is_html(content_type):
            span.set_attribute("proxy.rewritten", True)
            return await buffer_and_rewrite(upstream, client, target)

        span.set_attribute("proxy.rewritten", False)
        return StreamingResponse(
            relay_body(upstream, client, target),
            status_code=upstream.status_code,
            headers=opaque_response_headers(upstream.headers),
        )

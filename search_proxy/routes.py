import logging
import re
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response

from search_proxy.vars import SEARCH_ENDPOINT
from search_proxy.proxy import (
    InternalError,
    ProxyError,
    ProxyRequest,
    fetch_upstream,
    is_http_url,
)
from search_proxy.proxy.html_rewriter import encode_uri_component
from search_proxy.proxy.upstream import NO_STORE
from search_proxy.utils.exception_logging import log_exception_with_details

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

PUBLIC_DIR = Path(__file__).parent / "public"

STATIC_CONTENT_TYPES = {
    ".html": "text/html; charset=utf-8",
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript; charset=utf-8",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
}
STATIC_ASSET_PATTERN = re.compile(r"\.(css|js|png|jpg|jpeg|svg|ico)$", re.IGNORECASE)

DEFAULT_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def _require_target(url: Optional[str]) -> str:
    if not url or not is_http_url(url):
        raise HTTPException(status_code=400, detail="Missing or invalid url parameter")
    return url


def _append_query(target: str, request: Request) -> str:
    """Re-encode every query parameter except url and append it to the target."""
    extra = [(k, v) for k, v in request.query_params.multi_items() if k != "url"]
    if not extra:
        return target
    query = urlencode(extra, safe="!~*'()", quote_via=quote)
    separator = "&" if "?" in target else "?"
    return f"{target}{separator}{query}"


async def _proxy(proxy_request: ProxyRequest) -> Response:
    try:
        return await fetch_upstream(proxy_request)
    except (HTTPException, ProxyError):
        raise
    except Exception as e:
        log_exception_with_details(logger, "[Routes]", e)
        raise InternalError() from e


def send_static_file(relative_path: str) -> Response:
    """Serve a file from the public directory, refusing paths that escape it."""
    public_root = PUBLIC_DIR.resolve()
    candidate = (public_root / relative_path).resolve()
    if public_root not in candidate.parents or not candidate.is_file():
        raise HTTPException(status_code=404, detail="Not found")
    content_type = STATIC_CONTENT_TYPES.get(
        candidate.suffix.lower(), "application/octet-stream"
    )
    return FileResponse(candidate, media_type=content_type, headers=NO_STORE)


@router.api_route("/healthz", methods=ALL_METHODS)
async def healthz():
    return PlainTextResponse("ok")


@router.get("/search")
async def search(q: Optional[str] = Query(None, description="Search terms")):
    if not q:
        raise HTTPException(status_code=400, detail="Missing query parameter q")
    target = f"{SEARCH_ENDPOINT}?q={encode_uri_component(q)}"
    logger.debug(f"[Routes] Search for {q!r}")
    return await _proxy(ProxyRequest(target_url=target))


@router.get("/proxy")
async def proxy(url: Optional[str] = Query(None, description="Absolute http(s) URL to fetch")):
    target = _require_target(url)
    return await _proxy(ProxyRequest(target_url=target))


@router.api_route("/formproxy", methods=ALL_METHODS)
async def form_proxy(
    request: Request,
    url: Optional[str] = Query(None, description="Original form action"),
):
    target = _require_target(url)

    if request.method == "GET":
        return await _proxy(ProxyRequest(target_url=_append_query(target, request)))

    if request.method == "POST":
        body = await request.body()
        headers = {
            "Content-Type": request.headers.get("content-type", DEFAULT_FORM_CONTENT_TYPE)
        }
        return await _proxy(
            ProxyRequest(target_url=target, method="POST", headers=headers, body=body)
        )

    raise HTTPException(status_code=405, detail="Method not allowed")


@router.api_route("/", methods=ALL_METHODS)
@router.api_route("/index.html", methods=ALL_METHODS)
async def index():
    return send_static_file("index.html")


@router.api_route("/{asset_path:path}", methods=ALL_METHODS)
async def static_asset(asset_path: str):
    if asset_path.startswith("public/") or STATIC_ASSET_PATTERN.search(asset_path):
        return send_static_file(asset_path.removeprefix("public/"))
    raise HTTPException(status_code=404, detail="Not found")

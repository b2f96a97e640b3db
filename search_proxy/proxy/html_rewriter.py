"""
Rewrite fetched HTML so that navigation keeps flowing through the proxy.

Scripts are dropped entirely and absolute http(s) targets of links, embedded
resources and forms are pointed at the proxy endpoints. The rewrite is pattern
based, not a DOM parse: well-formed markup is rewritten exactly as documented,
malformed markup is rewritten on a best-effort basis.
"""

import re
from urllib.parse import quote

from .url_validation import is_http_url

PROXY_ENDPOINT = "/proxy"
FORM_PROXY_ENDPOINT = "/formproxy"

# Characters encodeURIComponent leaves alone besides alphanumerics and "-_."
_URI_COMPONENT_SAFE = "!~*'()"

_SCRIPT_PATTERN = re.compile(r"<script\b[\s\S]*?</script>", re.IGNORECASE)
_HREF_PATTERN = re.compile(r"href=([\"'])(https?://[^\"'>\s]+)\1", re.IGNORECASE)
_SRC_PATTERN = re.compile(r"src=([\"'])(https?://[^\"'>\s]+)\1", re.IGNORECASE)
_FORM_ACTION_PATTERN = re.compile(
    r"<form\b([^>]*?)action=([\"'])(https?://[^\"'>\s]+)\2", re.IGNORECASE
)
_FORM_ACTION_FALLBACK_PATTERN = re.compile(
    r"<form\b([^>]*?)action=([^>\s]+)", re.IGNORECASE
)


def encode_uri_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def proxy_url(target: str) -> str:
    return f"{PROXY_ENDPOINT}?url={encode_uri_component(target)}"


def form_proxy_url(target: str) -> str:
    return f"{FORM_PROXY_ENDPOINT}?url={encode_uri_component(target)}"


def _rewrite_href(match: re.Match) -> str:
    quote_char, link = match.group(1), match.group(2)
    return f"href={quote_char}{proxy_url(link)}{quote_char}"


def _rewrite_src(match: re.Match) -> str:
    quote_char, link = match.group(1), match.group(2)
    return f"src={quote_char}{proxy_url(link)}{quote_char}"


def _rewrite_form_action(match: re.Match) -> str:
    attrs, quote_char, action = match.group(1), match.group(2), match.group(3)
    return f"<form{attrs}action={quote_char}{form_proxy_url(action)}{quote_char}"


def _rewrite_form_action_fallback(match: re.Match) -> str:
    attrs, raw_value = match.group(1), match.group(2)
    cleaned = raw_value.replace('"', "").replace("'", "")
    if is_http_url(cleaned):
        return f'<form{attrs}action="{form_proxy_url(cleaned)}"'
    return match.group(0)


def rewrite_html(html: str) -> str:
    """
    Strip scripts and route absolute link, resource and form targets back
    through the proxy.

    Args:
        html: Decoded HTML document as returned by the remote host

    Returns:
        The rewritten document, or the input unchanged when it is empty
    """
    if not html:
        return html

    html = _SCRIPT_PATTERN.sub("", html)
    html = _HREF_PATTERN.sub(_rewrite_href, html)
    html = _SRC_PATTERN.sub(_rewrite_src, html)
    html = _FORM_ACTION_PATTERN.sub(_rewrite_form_action, html)
    # Unquoted or irregularly quoted actions the strict pattern missed
    html = _FORM_ACTION_FALLBACK_PATTERN.sub(_rewrite_form_action_fallback, html)
    return html

import asyncio
import uuid

import pytest
from unittest.mock import Mock, patch, AsyncMock
from fastapi import HTTPException
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient
from httpx import AsyncClient, ConnectError, Headers, ReadError
from httpx import Response as HttpxResponse

from search_proxy.proxy import InvalidTarget, ProxyRequest
from search_proxy.routes import send_static_file
from search_proxy.vars import SEARCH_ENDPOINT


@pytest.fixture(scope="module")
def test_app():
    from search_proxy.server import app

    return app


@pytest.fixture
def identity():
    return f"test-{uuid.uuid4()}"


@pytest.fixture
def client(test_app, identity):
    # A fresh identity per test keeps the shared rate limiter out of the way
    with TestClient(test_app, headers={"x-forwarded-for": identity}) as test_client:
        yield test_client


@pytest.fixture
def mock_fetch():
    with patch("search_proxy.routes.fetch_upstream", new_callable=AsyncMock) as fetch:
        fetch.return_value = PlainTextResponse("proxied")
        yield fetch


def _sent_request(mock_fetch) -> ProxyRequest:
    return mock_fetch.call_args.args[0]


class TestHealthz:
    def test_ok(self, client, mock_fetch):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.text == "ok"
        assert response.headers["content-type"].startswith("text/plain")
        mock_fetch.assert_not_called()


class TestSearch:
    def test_missing_query(self, client, mock_fetch):
        response = client.get("/search")

        assert response.status_code == 400
        assert response.text == "Missing query parameter q"
        mock_fetch.assert_not_called()

    def test_empty_query(self, client, mock_fetch):
        assert client.get("/search", params={"q": ""}).status_code == 400

    def test_builds_search_target(self, client, mock_fetch):
        response = client.get("/search", params={"q": "hello world/?"})

        assert response.status_code == 200
        assert response.text == "proxied"
        sent = _sent_request(mock_fetch)
        assert sent.target_url == f"{SEARCH_ENDPOINT}?q=hello%20world%2F%3F"
        assert sent.method == "GET"
        assert sent.body is None


class TestProxy:
    @pytest.mark.parametrize(
        "params", [{}, {"url": ""}, {"url": "ftp://x"}, {"url": "not a url"}]
    )
    def test_missing_or_invalid_url(self, client, mock_fetch, params):
        response = client.get("/proxy", params=params)

        assert response.status_code == 400
        assert response.text == "Missing or invalid url parameter"
        mock_fetch.assert_not_called()

    def test_valid_url(self, client, mock_fetch):
        response = client.get("/proxy", params={"url": "https://example.com/page?a=1"})

        assert response.status_code == 200
        sent = _sent_request(mock_fetch)
        assert sent.target_url == "https://example.com/page?a=1"
        assert sent.method == "GET"


class TestFormProxy:
    def test_missing_url_get(self, client, mock_fetch):
        response = client.get("/formproxy")

        assert response.status_code == 400
        assert response.text == "Missing or invalid url parameter"

    def test_missing_url_post(self, client, mock_fetch):
        response = client.post("/formproxy", content=b"a=1")

        assert response.status_code == 400
        mock_fetch.assert_not_called()

    def test_get_appends_query_with_ampersand(self, client, mock_fetch):
        client.get(
            "/formproxy",
            params={"url": "https://x.com/s?a=1", "q": "hello world", "page": "2"},
        )

        assert _sent_request(mock_fetch).target_url == "https://x.com/s?a=1&q=hello%20world&page=2"

    def test_get_appends_query_with_question_mark(self, client, mock_fetch):
        client.get("/formproxy", params=[("url", "https://x.com/s"), ("tag", "a"), ("tag", "b")])

        assert _sent_request(mock_fetch).target_url == "https://x.com/s?tag=a&tag=b"

    def test_get_without_extra_params(self, client, mock_fetch):
        client.get("/formproxy", params={"url": "https://x.com/s"})

        assert _sent_request(mock_fetch).target_url == "https://x.com/s"

    def test_post_forwards_body_and_content_type(self, client, mock_fetch):
        client.post(
            "/formproxy",
            params={"url": "https://x.com/submit"},
            content=b'{"a": 1}',
            headers={"content-type": "application/json"},
        )

        sent = _sent_request(mock_fetch)
        assert sent.method == "POST"
        assert sent.target_url == "https://x.com/submit"
        assert sent.body == b'{"a": 1}'
        assert sent.headers == {"Content-Type": "application/json"}

    def test_post_defaults_content_type(self, client, mock_fetch):
        client.post("/formproxy", params={"url": "https://x.com/submit"}, content=b"a=1&b=2")

        sent = _sent_request(mock_fetch)
        assert sent.headers == {"Content-Type": "application/x-www-form-urlencoded"}
        assert sent.body == b"a=1&b=2"

    def test_other_methods_not_allowed(self, client, mock_fetch):
        response = client.put("/formproxy", params={"url": "https://x.com/submit"})

        assert response.status_code == 405
        assert response.text == "Method not allowed"
        mock_fetch.assert_not_called()

    def test_other_methods_without_url_are_bad_requests(self, client, mock_fetch):
        assert client.delete("/formproxy").status_code == 400


class TestErrorMapping:
    def test_invalid_target_from_pipeline(self, client, mock_fetch):
        mock_fetch.side_effect = InvalidTarget()

        response = client.get("/proxy", params={"url": "https://example.com"})

        assert response.status_code == 400
        assert response.text == "Invalid target URL"

    def test_unexpected_error_is_internal_error(self, client, mock_fetch):
        mock_fetch.side_effect = RuntimeError("boom")

        response = client.get("/proxy", params={"url": "https://example.com"})

        assert response.status_code == 500
        assert response.text == "Internal server error"

    def test_unknown_path(self, client):
        response = client.get("/does-not-exist")

        assert response.status_code == 404
        assert response.text == "Not found"


def _upstream(status_code, headers, content):
    response = Mock(spec=HttpxResponse)
    response.status_code = status_code
    response.headers = Headers(headers)
    response.aread = AsyncMock(return_value=content)
    response.aclose = AsyncMock()

    async def aiter_raw():
        yield content

    response.aiter_raw = aiter_raw
    return response


class TestPipeline:
    """Requests travel through the real fetcher with only the network mocked."""

    def test_html_404_becomes_rewritten_200(self, client):
        upstream = _upstream(
            404,
            {"content-type": "text/html; charset=utf-8"},
            b'<script>alert(1)</script><a href="http://x.com/y">y</a>',
        )
        with patch.object(AsyncClient, "send", new_callable=AsyncMock, return_value=upstream):
            response = client.get("/proxy", params={"url": "http://x.com/missing"})

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        assert response.text == '<a href="/proxy?url=http%3A%2F%2Fx.com%2Fy">y</a>'

    def test_json_404_streamed_verbatim(self, client):
        upstream = _upstream(
            404,
            {"content-type": "application/json", "set-cookie": "track=1"},
            b'{"error": "missing"}',
        )
        with patch.object(AsyncClient, "send", new_callable=AsyncMock, return_value=upstream):
            response = client.get("/proxy", params={"url": "https://api.example.com/x"})

        assert response.status_code == 404
        assert response.content == b'{"error": "missing"}'
        assert response.headers["cache-control"] == "no-store"
        assert "set-cookie" not in response.headers
        upstream.aclose.assert_awaited()

    def test_connection_failure_is_bad_gateway(self, client):
        with patch.object(
            AsyncClient,
            "send",
            new_callable=AsyncMock,
            side_effect=ConnectError("Connection refused"),
        ):
            response = client.get("/proxy", params={"url": "https://unreachable.example.com"})

        assert response.status_code == 502
        assert response.text == "Bad gateway"

    def test_client_cookies_never_forwarded(self, client):
        upstream = _upstream(200, {"content-type": "text/plain"}, b"ok")
        with patch.object(
            AsyncClient, "send", new_callable=AsyncMock, return_value=upstream
        ) as send:
            client.get(
                "/proxy",
                params={"url": "https://example.com"},
                headers={"cookie": "session=secret"},
            )

        request = send.call_args.args[0]
        assert "cookie" not in request.headers
        assert "x-forwarded-for" not in request.headers


class TestRateLimiting:
    def test_requests_over_budget_rejected(self, client):
        from search_proxy.server import rate_limiter

        for _ in range(rate_limiter.max_requests):
            assert client.get("/healthz").status_code == 200

        response = client.get("/healthz")
        assert response.status_code == 429
        assert response.text == "Too many requests"

    def test_budget_is_per_identity(self, test_app):
        from search_proxy.server import rate_limiter

        with TestClient(test_app, headers={"x-forwarded-for": "198.51.100.1"}) as noisy:
            for _ in range(rate_limiter.max_requests + 1):
                noisy.get("/healthz")
            assert noisy.get("/healthz").status_code == 429

        with TestClient(test_app, headers={"x-forwarded-for": "198.51.100.2"}) as quiet:
            assert quiet.get("/healthz").status_code == 200


class TestStreamingFailure:
    """The whole application stack must not finish a relay the upstream abandoned."""

    @pytest.mark.asyncio
    async def test_upstream_failure_mid_body_leaves_response_unterminated(self, test_app, identity):
        upstream = Mock(spec=HttpxResponse)
        upstream.status_code = 200
        upstream.headers = Headers({"content-type": "application/octet-stream"})
        upstream.aclose = AsyncMock()

        async def aiter_raw():
            yield b"x" * 1000
            raise ReadError("peer closed connection without sending complete message body")

        upstream.aiter_raw = aiter_raw

        scope = {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.4"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/proxy",
            "raw_path": b"/proxy",
            "root_path": "",
            "query_string": b"url=https%3A%2F%2Fexample.com%2Fbig.bin",
            "headers": [(b"host", b"testserver"), (b"x-forwarded-for", identity.encode())],
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }
        request_sent = False
        disconnected = asyncio.Event()

        async def receive():
            nonlocal request_sent
            if not request_sent:
                request_sent = True
                return {"type": "http.request", "body": b"", "more_body": False}
            await disconnected.wait()
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        with patch.object(AsyncClient, "send", new_callable=AsyncMock, return_value=upstream), patch.object(
            AsyncClient, "aclose", new_callable=AsyncMock
        ):
            with pytest.raises(ReadError):
                await test_app(scope, receive, send)

        assert messages[0]["type"] == "http.response.start"
        assert messages[0]["status"] == 200
        bodies = [m for m in messages if m["type"] == "http.response.body"]
        assert b"".join(m.get("body", b"") for m in bodies) == b"x" * 1000
        assert all(m.get("more_body", False) for m in bodies)
        upstream.aclose.assert_awaited()


class TestUnhandledErrors:
    def test_failure_in_static_handler_is_plain_internal_error(self, test_app, identity):
        with patch(
            "search_proxy.routes.FileResponse", side_effect=OSError("disk unavailable")
        ), patch("search_proxy.server.log_exception_with_details") as log_details:
            with TestClient(
                test_app,
                raise_server_exceptions=False,
                headers={"x-forwarded-for": identity},
            ) as client:
                response = client.get("/style.css")

        assert response.status_code == 500
        assert response.text == "Internal server error"
        assert response.headers["content-type"].startswith("text/plain")
        log_details.assert_called_once()
        assert isinstance(log_details.call_args.args[2], OSError)


class TestStaticFiles:
    def test_index(self, client):
        for path in ("/", "/index.html"):
            response = client.get(path)

            assert response.status_code == 200
            assert response.headers["content-type"] == "text/html; charset=utf-8"
            assert response.headers["cache-control"] == "no-store"
            assert 'action="/search"' in response.text

    def test_index_for_any_method(self, client):
        assert client.head("/").status_code == 200
        assert client.post("/").status_code == 200
        assert client.request("OPTIONS", "/index.html").status_code == 200

    def test_asset_for_any_method(self, client):
        response = client.post("/public/style.css")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/css")

    def test_stylesheet(self, client):
        for path in ("/public/style.css", "/style.css"):
            response = client.get(path)

            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/css")

    def test_missing_asset(self, client):
        response = client.get("/public/missing.css")

        assert response.status_code == 404
        assert response.text == "Not found"

    def test_path_outside_public_dir_refused(self):
        with pytest.raises(HTTPException) as exc_info:
            send_static_file("../routes.py")

        assert exc_info.value.status_code == 404


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

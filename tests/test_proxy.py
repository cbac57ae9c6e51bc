"""Tests for forwarding requests to the Tensors API."""

import json

import httpx
import pytest

from conftest import API_KEY, SESSION_SECRET, UPSTREAM_HOST, make_settings, session_cookie_header


@pytest.fixture
def session(gateway):
    return session_cookie_header(gateway.sessions.issue("alice", 3600))


class TestApiAuthentication:
    async def test_missing_cookie_is_rejected_before_upstream(self, client, network):
        response = await client.get("/api/db/models")
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}
        assert network.requests == []

    async def test_bad_cookie_is_rejected_before_upstream(self, client, network):
        response = await client.post(
            "/api/generate",
            json={"prompt": "a cat"},
            headers=session_cookie_header("alice:9999999999:deadbeef"),
        )
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}
        assert network.requests == []

    async def test_expired_cookie_is_rejected(self, client, gateway, clock, network):
        headers = session_cookie_header(gateway.sessions.issue("alice", 5))
        clock.advance(10)
        response = await client.get("/api/db/models", headers=headers)
        assert response.status_code == 401
        assert network.requests == []

    async def test_bare_api_prefix_requires_session(self, client, network):
        response = await client.get("/api")
        assert response.status_code == 401
        assert network.requests == []

    async def test_token_query_param_does_not_authenticate_api(self, client, gateway, network):
        token = gateway.sessions.issue("alice", 60)
        response = await client.get("/api/db/models", params={"token": token})
        assert response.status_code == 401
        assert network.requests == []


class TestForwarding:
    async def test_get_is_forwarded_with_api_key(self, client, network, session):
        response = await client.get(
            "/api/db/models?type=LORA&limit=5",
            headers={**session, "Authorization": "Bearer client-token"},
        )
        assert response.status_code == 200
        assert response.json() == {"ok": True}

        (upstream,) = network.upstream_requests
        assert upstream.method == "GET"
        assert str(upstream.url) == f"https://{UPSTREAM_HOST}/api/db/models?type=LORA&limit=5"
        assert upstream.headers["x-api-key"] == API_KEY
        assert upstream.headers["content-type"] == "application/json"
        assert "cookie" not in upstream.headers
        assert upstream.headers.get("authorization") is None
        assert upstream.content == b""

    async def test_query_string_is_preserved_exactly(self, client, network, session):
        await client.get("/api/search?q=red%20fox&tag=a&tag=b&empty=", headers=session)
        (upstream,) = network.upstream_requests
        assert upstream.url.query == b"q=red%20fox&tag=a&tag=b&empty="

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
    async def test_body_is_forwarded_for_non_get(self, client, network, session, method):
        body = json.dumps({"prompt": "a cat", "steps": 20}).encode()
        response = await client.request(method, "/api/generate", content=body, headers=session)
        assert response.status_code == 200

        (upstream,) = network.upstream_requests
        assert upstream.method == method
        assert upstream.content == body
        assert upstream.headers["x-api-key"] == API_KEY

    async def test_status_body_and_headers_are_mirrored(self, client, network, session):
        network.upstream_response = lambda request: httpx.Response(
            404,
            content=b'{"detail":"Model not found"}',
            headers={"Content-Type": "application/json", "X-Request-Id": "req-1"},
        )
        response = await client.get("/api/models/missing", headers=session)
        assert response.status_code == 404
        assert response.content == b'{"detail":"Model not found"}'
        assert response.headers["x-request-id"] == "req-1"
        assert response.headers["content-type"] == "application/json"

    async def test_binary_body_is_mirrored_byte_for_byte(self, client, network, session):
        png = bytes(range(256)) * 4
        network.upstream_response = lambda request: httpx.Response(
            200, content=png, headers={"Content-Type": "image/png"}
        )
        response = await client.get("/api/gallery/image.png", headers=session)
        assert response.content == png
        assert response.headers["content-type"] == "image/png"

    async def test_gateway_cors_headers_win(self, client, network, session):
        network.upstream_response = lambda request: httpx.Response(
            200,
            json={},
            headers={
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Credentials": "false",
            },
        )
        response = await client.get(
            "/api/db/models", headers={**session, "Origin": "https://tensors.saiden.dev"}
        )
        assert response.headers["access-control-allow-origin"] == "https://tensors.saiden.dev"
        assert response.headers.get_list("access-control-allow-origin") == ["https://tensors.saiden.dev"]
        assert response.headers["access-control-allow-credentials"] == "true"

    async def test_upstream_vary_is_kept_alongside_origin(self, client, network, session):
        network.upstream_response = lambda request: httpx.Response(
            200, content=b"{}", headers={"Content-Type": "application/json", "Vary": "Accept-Encoding"}
        )
        response = await client.get("/api/db/models", headers=session)
        assert response.headers.get_list("vary") == ["Accept-Encoding, Origin"]

    async def test_streamed_upstream_body_is_relayed(self, client, network, session):
        async def chunks():
            yield b"first,"
            yield b"second"

        network.upstream_response = lambda request: httpx.Response(
            200, content=chunks(), headers={"Content-Type": "text/plain"}
        )
        response = await client.get("/api/events", headers=session)
        assert response.status_code == 200
        assert response.content == b"first,second"

    async def test_upstream_cookies_are_not_replayed_for_other_users(self, client, network, session):
        network.upstream_response = lambda request: httpx.Response(
            200, json={}, headers={"Set-Cookie": "upstream=secret; Path=/"}
        )
        await client.get("/api/a", headers=session)
        await client.get("/api/b", headers=session)
        second = network.upstream_requests[1]
        assert "cookie" not in second.headers

    async def test_non_api_paths_are_forwarded_without_session(self, client, network):
        response = await client.get("/health")
        assert response.status_code == 200
        (upstream,) = network.upstream_requests
        assert str(upstream.url) == f"https://{UPSTREAM_HOST}/health"
        assert upstream.headers["x-api-key"] == API_KEY

    async def test_docs_paths_reach_upstream(self, client, network):
        await client.get("/openapi.json")
        (upstream,) = network.upstream_requests
        assert upstream.url.path == "/openapi.json"

    @pytest.mark.parametrize("settings", [make_settings(UPSTREAM_URL="http://localhost:9000/")])
    async def test_custom_upstream_base(self, client, network):
        await client.get("/status?x=1")
        (upstream,) = network.requests
        assert str(upstream.url) == "http://localhost:9000/status?x=1"


class TestUpstreamFailure:
    async def test_unreachable_upstream_returns_502(self, client, network, session):
        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        network.upstream_response = fail
        response = await client.get("/api/db/models", headers={**session, "Origin": "http://localhost:5173"})
        assert response.status_code == 502
        assert response.json() == {"error": "Upstream request failed"}
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"

    async def test_timeout_returns_502(self, client, network, session):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        network.upstream_response = slow
        response = await client.get("/api/db/models", headers=session)
        assert response.status_code == 502
        assert API_KEY not in response.text
        assert SESSION_SECRET not in response.text

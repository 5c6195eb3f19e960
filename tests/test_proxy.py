"""
Tests for the reverse proxy
"""

import asyncio

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from config.models import ProxyConfig, UpstreamRole, UpstreamTarget
from core.proxy import WEBSOCKET_UPSTREAM_ERROR, ReverseProxy, filter_headers, sendable_close_code


def build_backend() -> FastAPI:
    backend = FastAPI()

    @backend.get("/api/missing")
    async def missing():
        return JSONResponse({"detail": "no such ride"}, status_code=404)

    @backend.api_route("/api/{rest:path}", methods=["GET", "POST", "PUT", "DELETE"])
    async def echo(request: Request, rest: str):
        body = await request.body()
        return JSONResponse(
            {
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query,
                "body": body.decode(),
                "headers": dict(request.headers),
            },
            status_code=201 if request.method == "POST" else 200,
            headers={"x-upstream": "backend"},
        )

    return backend


def build_gateway(proxy: ReverseProxy) -> FastAPI:
    app = FastAPI()

    @app.api_route("/{full_path:path}", methods=["GET", "POST", "PUT", "DELETE"])
    async def forward(request: Request, full_path: str):
        return await proxy.forward(request, UpstreamRole.BACKEND)

    return app


def make_proxy(transport=None, port=8080, availability=None, timeout=1.0):
    config = ProxyConfig(
        timeout=timeout,
        connect_timeout=0.5,
        targets={UpstreamRole.BACKEND: UpstreamTarget(port=port)},
    )
    transports = {UpstreamRole.BACKEND: transport} if transport is not None else None
    return ReverseProxy(config, availability=availability, transports=transports)


@pytest.fixture
def backend_client():
    proxy = make_proxy(httpx.ASGITransport(app=build_backend()))
    with TestClient(build_gateway(proxy)) as client:
        yield client


class TestFilterHeaders:

    def test_hop_by_hop_removed(self):
        raw = [
            (b"Connection", b"keep-alive"),
            (b"Keep-Alive", b"timeout=5"),
            (b"Transfer-Encoding", b"chunked"),
            (b"Content-Type", b"application/json"),
        ]
        assert filter_headers(raw) == [(b"Content-Type", b"application/json")]

    def test_connection_tokens_removed(self):
        raw = [(b"connection", b"close, X-Session-Hint"), (b"x-session-hint", b"1"), (b"x-other", b"2")]
        assert filter_headers(raw) == [(b"x-other", b"2")]

    def test_duplicates_kept_in_order(self):
        raw = [(b"set-cookie", b"a=1"), (b"set-cookie", b"b=2")]
        assert filter_headers(raw) == raw

    def test_extra_drop(self):
        raw = [(b"host", b"example.com"), (b"accept", b"*/*")]
        assert filter_headers(raw, drop=("Host",)) == [(b"accept", b"*/*")]


class TestForward:
    """HTTP forwarding through an in-process backend"""

    def test_get_is_forwarded_with_query(self, backend_client):
        response = backend_client.get("/api/rides?from=berlin&to=paris")

        assert response.status_code == 200
        data = response.json()
        assert data["method"] == "GET"
        assert data["path"] == "/api/rides"
        assert data["query"] == "from=berlin&to=paris"
        assert response.headers["x-upstream"] == "backend"

    def test_post_body_is_forwarded(self, backend_client):
        response = backend_client.post("/api/rides", json={"seats": 3})

        assert response.status_code == 201
        assert response.json()["body"] == '{"seats":3}'

    def test_upstream_status_passes_through(self, backend_client):
        response = backend_client.get("/api/missing")

        assert response.status_code == 404
        assert response.json() == {"detail": "no such ride"}

    def test_forwarding_headers_added(self, backend_client):
        response = backend_client.get("/api/whoami", headers={"X-Request-Id": "abc"})

        headers = response.json()["headers"]
        assert headers["x-request-id"] == "abc"
        assert headers["x-forwarded-for"] == "testclient"
        assert headers["x-forwarded-proto"] == "http"
        assert headers["x-forwarded-host"] == "testserver"

    def test_existing_forwarded_for_is_extended(self, backend_client):
        response = backend_client.get("/api/whoami", headers={"X-Forwarded-For": "203.0.113.7"})

        assert response.json()["headers"]["x-forwarded-for"] == "203.0.113.7, testclient"

    def test_response_hop_by_hop_headers_stripped(self):
        def handler(request):
            return httpx.Response(200, headers={"Connection": "close", "X-Trace": "t1"}, text="ok")

        proxy = make_proxy(httpx.MockTransport(handler))
        with TestClient(build_gateway(proxy)) as client:
            response = client.get("/api/trace")

        assert response.text == "ok"
        assert response.headers["x-trace"] == "t1"
        assert "connection" not in response.headers


class TestFailures:
    """Upstream failures become 502/504 responses"""

    def test_timeout_is_504(self):
        def handler(request):
            raise httpx.ReadTimeout("upstream too slow", request=request)

        proxy = make_proxy(httpx.MockTransport(handler))
        with TestClient(build_gateway(proxy)) as client:
            response = client.get("/api/slow")

        assert response.status_code == 504
        body = response.json()
        assert body["role"] == "backend"
        assert body["path"] == "/api/slow"

    def test_connect_error_is_502(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        proxy = make_proxy(httpx.MockTransport(handler))
        with TestClient(build_gateway(proxy)) as client:
            response = client.get("/api/rides")

        assert response.status_code == 502
        assert response.json()["role"] == "backend"

    def test_nothing_listening_is_502(self, free_port):
        proxy = make_proxy(port=free_port)
        with TestClient(build_gateway(proxy)) as client:
            response = client.get("/api/rides")

        assert response.status_code == 502

    def test_unavailable_upstream_short_circuits(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        proxy = make_proxy(httpx.MockTransport(handler), availability=lambda role: False)
        with TestClient(build_gateway(proxy)) as client:
            response = client.get("/api/rides")

        assert response.status_code == 502
        assert calls == []

    def test_missing_target_is_502(self):
        proxy = ReverseProxy(ProxyConfig())
        with TestClient(build_gateway(proxy)) as client:
            response = client.get("/api/rides")

        assert response.status_code == 502
        assert proxy.has_target(UpstreamRole.BACKEND) is False


def make_request(path: str) -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("ascii"),
        "query_string": b"",
        "root_path": "",
        "headers": [(b"host", b"gateway.test")],
        "server": ("gateway.test", 80),
        "client": ("198.51.100.4", 52000),
    })


class TestStreaming:
    """Response bodies are relayed chunk by chunk"""

    @pytest.mark.asyncio
    async def test_first_chunk_arrives_before_upstream_finishes(self):
        produced = []
        release = asyncio.Event()

        async def feed():
            for i in range(3):
                produced.append(i)
                yield f"chunk{i}\n".encode()
                if i == 0:
                    await release.wait()

        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/plain"}, content=feed())

        proxy = make_proxy(httpx.MockTransport(handler))
        try:
            response = await proxy.forward(make_request("/api/feed"), UpstreamRole.BACKEND)
            chunks = response.body_iterator

            first = await asyncio.wait_for(chunks.__anext__(), timeout=2.0)
            assert first == b"chunk0\n"
            assert produced == [0]

            release.set()
            rest = [chunk async for chunk in chunks]
        finally:
            await proxy.aclose()

        assert response.status_code == 200
        assert rest == [b"chunk1\n", b"chunk2\n"]
        assert produced == [0, 1, 2]


class TestCloseCodes:
    """Reserved close codes are never sent in a close frame"""

    def test_no_status_becomes_normal_closure(self):
        assert sendable_close_code(None) == 1000
        assert sendable_close_code(1005) == 1000

    def test_abnormal_closure_is_replaced(self):
        assert sendable_close_code(1006) == 1001
        assert sendable_close_code(1006, WEBSOCKET_UPSTREAM_ERROR) == WEBSOCKET_UPSTREAM_ERROR

    def test_application_codes_pass_through(self):
        assert sendable_close_code(1000) == 1000
        assert sendable_close_code(4000) == 4000

"""
Tests for the catch-all gateway dispatcher
"""

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from config.factory import create_test_config
from config.models import ProxyConfig, UpstreamRole, UpstreamTarget
from services.supervisor import Supervisor


def echo_handler(name):
    def handler(request):
        return httpx.Response(200, json={"upstream": name, "path": request.url.path})
    return handler


@pytest.fixture
def supervisor(tmp_path, asset_root):
    config = create_test_config(str(tmp_path))
    transports = {UpstreamRole.BACKEND: httpx.MockTransport(echo_handler("backend"))}
    return Supervisor(config, transports=transports)


@pytest.fixture
def client(supervisor):
    with TestClient(supervisor.app) as client:
        yield client


class TestStaticDispatch:
    """Requests answered from the asset root"""

    def test_root_serves_entry_document(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert 'id="root"' in response.text
        assert response.headers["cache-control"] == "no-cache"

    def test_client_side_route_falls_back_to_entry(self, client):
        response = client.get("/rides/42/details")

        assert response.status_code == 200
        assert 'id="root"' in response.text

    def test_hashed_asset(self, client):
        response = client.get("/assets/index-BxY3kz9a.js")

        assert response.status_code == 200
        assert response.text == "console.log('app');"
        assert "immutable" in response.headers["cache-control"]

    def test_head_static_file(self, client):
        response = client.head("/robots.txt")

        assert response.status_code == 200
        assert response.content == b""

    def test_write_methods_on_static_are_rejected(self, client):
        response = client.post("/robots.txt", content=b"x")

        assert response.status_code == 405
        assert response.headers["allow"] == "GET, HEAD"

    def test_missing_build_serves_placeholder(self, tmp_path):
        config = create_test_config(str(tmp_path))
        with TestClient(Supervisor(config).app) as client:
            response = client.get("/")

        assert response.status_code == 200
        assert "HitchBuddy" in response.text


class TestProxyDispatch:
    """Requests forwarded to upstreams"""

    def test_api_is_proxied_to_backend(self, client):
        response = client.get("/api/rides")

        assert response.status_code == 200
        assert response.json() == {"upstream": "backend", "path": "/api/rides"}

    def test_static_file_wins_over_api_prefix(self, client, asset_root):
        (asset_root / "api").mkdir()
        (asset_root / "api" / "schema.json").write_text("{}")

        response = client.get("/api/schema.json")

        assert response.text == "{}"

    def test_unreachable_backend_is_502(self, tmp_path, asset_root, free_port):
        config = create_test_config(
            str(tmp_path),
            proxy=ProxyConfig(
                timeout=1.0,
                connect_timeout=0.5,
                targets={UpstreamRole.BACKEND: UpstreamTarget(port=free_port)},
            ),
        )
        with TestClient(Supervisor(config).app) as client:
            response = client.get("/api/rides")
            assert client.get("/health").status_code == 200

        assert response.status_code == 502
        assert response.json()["role"] == "backend"

    def test_cors_preflight_under_api_prefix(self, client):
        response = client.options("/api/rides")

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert "DELETE" in response.headers["access-control-allow-methods"]

    def test_frontend_catch_all(self, tmp_path, asset_root):
        config = create_test_config(
            str(tmp_path),
            proxy=ProxyConfig(targets={
                UpstreamRole.BACKEND: UpstreamTarget(port=8080),
                UpstreamRole.FRONTEND: UpstreamTarget(port=3000),
            }),
        )
        transports = {
            UpstreamRole.BACKEND: httpx.MockTransport(echo_handler("backend")),
            UpstreamRole.FRONTEND: httpx.MockTransport(echo_handler("frontend")),
        }
        with TestClient(Supervisor(config, transports=transports).app) as client:
            assert client.get("/src/main.tsx").json()["upstream"] == "frontend"
            assert client.get("/api/rides").json()["upstream"] == "backend"
            assert client.get("/robots.txt").text == "User-agent: *\n"


class TestWebSocketDispatch:

    def test_websocket_to_static_path_is_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/robots.txt"):
                pass
        assert exc.value.code == 1008

    def test_websocket_without_upstream_closes_with_1011(self, tmp_path, asset_root, free_port):
        config = create_test_config(
            str(tmp_path),
            proxy=ProxyConfig(
                connect_timeout=0.5,
                targets={UpstreamRole.BACKEND: UpstreamTarget(port=free_port)},
            ),
        )
        with TestClient(Supervisor(config).app) as client:
            with client.websocket_connect("/api/live") as websocket:
                with pytest.raises(WebSocketDisconnect) as exc:
                    websocket.receive_text()

        assert exc.value.code == 1011

"""
Tests for the static asset server and SPA fallback
"""

from pathlib import Path

import pytest
from fastapi.responses import FileResponse

from config.models import StaticConfig
from core.exception_handling import AssetNotFound
from core.static_assets import StaticAssetServer, PLACEHOLDER_HTML


@pytest.fixture
def server(asset_root):
    return StaticAssetServer(StaticConfig(asset_root=str(asset_root)), api_prefix="/api")


class TestResolve:
    """Path resolution under the asset root"""

    def test_existing_file(self, server, asset_root):
        assert server.resolve("/robots.txt") == (asset_root / "robots.txt").resolve()

    def test_directory_maps_to_entry_document(self, server, asset_root):
        assert server.resolve("/docs") == (asset_root / "docs" / "index.html").resolve()
        assert server.resolve("/") == (asset_root / "index.html").resolve()

    def test_missing_file(self, server):
        with pytest.raises(AssetNotFound):
            server.resolve("/nope.js")

    @pytest.mark.parametrize("path", ["/../secret.txt", "/assets/../../secret.txt", "/%2e%2e/secret.txt"])
    def test_traversal_is_rejected(self, server, asset_root, path):
        (asset_root.parent / "secret.txt").write_text("top secret")
        with pytest.raises(AssetNotFound):
            server.resolve(path)

    def test_exists_only_for_regular_files(self, server):
        assert server.exists("/robots.txt") is True
        assert server.exists("/assets/index-BxY3kz9a.js") is True
        assert server.exists("/") is False
        assert server.exists("/docs") is False
        assert server.exists("/dashboard") is False
        assert server.exists("/../secret.txt") is False


class TestCachePolicy:
    """Cache-Control per asset kind"""

    def test_entry_document_is_not_cached(self, server):
        response = server.serve("/index.html")
        assert response.headers["cache-control"] == "no-cache"

    def test_assets_directory_is_immutable(self, server):
        response = server.serve("/assets/index-BxY3kz9a.js")
        assert response.headers["cache-control"] == "public, max-age=31536000, immutable"
        assert "javascript" in response.headers["content-type"]

    def test_hex_hashed_name_is_immutable(self, server):
        response = server.serve("/vendor.1a2b3c4d5e.css")
        assert response.headers["cache-control"] == "public, max-age=31536000, immutable"
        assert response.headers["content-type"].startswith("text/css")

    def test_other_files_cached_for_a_day(self, server):
        response = server.serve("/robots.txt")
        assert response.headers["cache-control"] == "public, max-age=86400"


class TestServe:
    """Response selection"""

    def test_existing_file_response(self, server, asset_root):
        response = server.serve("/robots.txt")
        assert isinstance(response, FileResponse)
        assert Path(response.path) == (asset_root / "robots.txt").resolve()
        assert response.status_code == 200

    def test_spa_fallback_serves_entry_document(self, server, asset_root):
        response = server.serve("/dashboard/rides/42")
        assert isinstance(response, FileResponse)
        assert Path(response.path) == (asset_root / "index.html").resolve()
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-cache"

    def test_missing_api_path_is_404(self, server):
        response = server.serve("/api/unknown")
        assert response.status_code == 404

    def test_head_is_allowed(self, server):
        assert server.serve("/robots.txt", method="HEAD").status_code == 200

    @pytest.mark.parametrize("method", ["POST", "PUT", "DELETE", "PATCH"])
    def test_other_methods_are_rejected(self, server, method):
        response = server.serve("/robots.txt", method=method)
        assert response.status_code == 405
        assert response.headers["allow"] == "GET, HEAD"

    def test_missing_root_serves_placeholder(self, tmp_path):
        server = StaticAssetServer(StaticConfig(asset_root=str(tmp_path / "missing")))

        response = server.serve("/")

        assert response.status_code == 200
        assert response.body.decode() == PLACEHOLDER_HTML
        assert response.headers["cache-control"] == "no-cache"
        assert server.build_available is False

    def test_missing_entry_document_serves_placeholder(self, asset_root):
        (asset_root / "index.html").unlink()
        server = StaticAssetServer(StaticConfig(asset_root=str(asset_root)))

        response = server.serve("/some/route")

        assert response.status_code == 200
        assert b"HitchBuddy" in response.body

    def test_placeholder_is_deterministic(self, tmp_path):
        server = StaticAssetServer(StaticConfig(asset_root=str(tmp_path / "missing")))
        assert server.serve("/a").body == server.serve("/b").body

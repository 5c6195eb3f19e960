"""
Static asset server with SPA fallback

Serves the built frontend from a directory. Unknown non-API paths fall back
to the entry document so client-side routing works; a missing build yields a
placeholder page instead of an error.
"""

import logging
import re
from pathlib import Path

from fastapi.responses import FileResponse, HTMLResponse, Response

from config.models import StaticConfig
from core.exception_handling import AssetNotFound
from core.routing import prefix_matches

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "HEAD")
NO_CACHE = "no-cache"

# e.g. app.3f9a2b7c.js, vendor-0123456789abcdef.css
_HASHED_NAME = re.compile(r"[.\-_][0-9a-fA-F]{8,}\.[A-Za-z0-9]+$")

PLACEHOLDER_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>HitchBuddy</title>
</head>
<body>
  <h1>HitchBuddy</h1>
  <p>The service is running. The frontend build is not available yet.</p>
  <p><a href="/health">Health status</a></p>
</body>
</html>
"""


class StaticAssetServer:
    """Resolve request paths under an asset root and build file responses"""

    def __init__(self, config: StaticConfig, api_prefix: str = "/api"):
        self.config = config
        self.root = Path(config.asset_root).resolve()
        self.api_prefix = api_prefix

    @property
    def entry_path(self) -> Path:
        return self.root / self.config.entry_document

    @property
    def build_available(self) -> bool:
        return self.root.is_dir() and self.entry_path.is_file()

    def _locate(self, path: str) -> Path:
        relative = path.lstrip("/")
        try:
            candidate = (self.root / relative).resolve()
        except (OSError, ValueError):
            raise AssetNotFound(path)

        if candidate != self.root and self.root not in candidate.parents:
            logger.warning(f"STATIC: rejected path outside asset root: {path!r}")
            raise AssetNotFound(path)
        return candidate

    def resolve(self, path: str) -> Path:
        """
        Map a URL path to a file under the root.

        Directories map to their entry document. Anything outside the root or
        not a regular file raises AssetNotFound.
        """
        candidate = self._locate(path)
        if candidate.is_dir():
            candidate = candidate / self.config.entry_document

        if not candidate.is_file():
            raise AssetNotFound(path)
        return candidate

    def exists(self, path: str) -> bool:
        """True only for regular files; directories fall through to the catch-all."""
        try:
            return self._locate(path).is_file()
        except AssetNotFound:
            return False

    def cache_control(self, path: str, file_path: Path) -> str:
        if file_path.name == self.config.entry_document:
            return NO_CACHE
        if any(prefix_matches(prefix.rstrip("/"), path) for prefix in self.config.immutable_prefixes):
            return f"public, max-age={self.config.immutable_max_age}, immutable"
        if _HASHED_NAME.search(file_path.name):
            return f"public, max-age={self.config.immutable_max_age}, immutable"
        return f"public, max-age={self.config.default_max_age}"

    def placeholder(self) -> HTMLResponse:
        return HTMLResponse(PLACEHOLDER_HTML, status_code=200, headers={"Cache-Control": NO_CACHE})

    def _file_response(self, path: str, file_path: Path) -> FileResponse:
        return FileResponse(file_path, headers={"Cache-Control": self.cache_control(path, file_path)})

    def serve(self, path: str, method: str = "GET") -> Response:
        """Build the response for `path`. Never raises for a missing file."""
        if method.upper() not in ALLOWED_METHODS:
            return Response(status_code=405, headers={"Allow": ", ".join(ALLOWED_METHODS)})

        try:
            return self._file_response(path, self.resolve(path))
        except AssetNotFound:
            pass

        if prefix_matches(self.api_prefix, path):
            return Response(status_code=404, content="Not Found", media_type="text/plain")

        return self.serve_entry()

    def serve_entry(self) -> Response:
        """SPA fallback: the entry document, or the placeholder when the build is missing"""
        if not self.build_available:
            logger.debug(f"STATIC: build missing under {self.root}, serving placeholder")
            return self.placeholder()
        return self._file_response("/" + self.config.entry_document, self.entry_path)

    def describe(self) -> dict:
        return {
            "asset_root": str(self.root),
            "entry_document": self.config.entry_document,
            "build_available": self.build_available,
        }

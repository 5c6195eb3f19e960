"""
Pytest configuration and shared fixtures for the gateway tests.
"""

import socket
import sys
import textwrap
from pathlib import Path

import pytest

# Add the project root to Python path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.factory import create_test_config


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow-running test")


INDEX_HTML = "<!DOCTYPE html><html><body><div id=\"root\"></div></body></html>"

BACKEND_SCRIPT = textwrap.dedent('''
    import json
    import os
    import sys
    from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer


    class Handler(BaseHTTPRequestHandler):
        def _send(self, status, body, content_type="text/plain"):
            data = body.encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def do_GET(self):
            if self.path == "/api/ping":
                self._send(200, "pong")
            elif self.path.startswith("/api/headers"):
                self._send(200, json.dumps(dict(self.headers)), "application/json")
            else:
                self._send(404, "missing")

        def do_POST(self):
            length = int(self.headers.get("Content-Length", "0"))
            body = self.rfile.read(length).decode("utf-8")
            self._send(201, json.dumps({"path": self.path, "body": body}), "application/json")

        def log_message(self, format, *args):
            sys.stderr.write("request: " + (format % args) + "\\n")
            sys.stderr.flush()


    port = int(os.environ["PORT"])
    server = ThreadingHTTPServer(("127.0.0.1", port), Handler)
    print(f"backend listening on {port}", flush=True)
    server.serve_forever()
''')


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def free_port():
    """An unused TCP port on the loopback interface"""
    return get_free_port()


@pytest.fixture
def asset_root(tmp_path):
    """A small built frontend: entry document, hashed bundle, plain files"""
    root = tmp_path / "public"
    (root / "assets").mkdir(parents=True)
    (root / "index.html").write_text(INDEX_HTML)
    (root / "assets" / "index-BxY3kz9a.js").write_text("console.log('app');")
    (root / "vendor.1a2b3c4d5e.css").write_text("body { margin: 0; }")
    (root / "robots.txt").write_text("User-agent: *\n")
    (root / "docs").mkdir()
    (root / "docs" / "index.html").write_text("<html>docs</html>")
    return root


@pytest.fixture
def test_config(tmp_path, asset_root):
    """Supervisor configuration pointing at the temporary asset root"""
    return create_test_config(str(tmp_path))


@pytest.fixture
def backend_script(tmp_path):
    """Path to a stdlib HTTP server that answers /api/ping with 'pong'"""
    script = tmp_path / "backend.py"
    script.write_text(BACKEND_SCRIPT)
    return script

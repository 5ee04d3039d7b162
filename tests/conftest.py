"""Shared fixtures for reqfile tests."""

import gzip
import http.server
import json
import socket
import threading
import time
import zlib

import pytest
from click.testing import CliRunner
from requests.structures import CaseInsensitiveDict

from reqfile import core
from reqfile.executor import ExecutionResult

JSON_BODY = {"id": 42, "tags": ["a", "b"], "token": "jwt-abc"}


class _Handler(http.server.BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        pass

    def _send(self, status, body=b"", headers=None):
        self.send_response(status)
        for key, value in headers or []:
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _route(self):
        path = self.path.split("?", 1)[0]

        if path == "/json":
            self._send(
                200,
                json.dumps(JSON_BODY).encode(),
                [
                    ("Content-Type", "application/json; charset=utf-8"),
                    ("X-Trace", "abc123"),
                ],
            )
        elif path == "/cookies":
            self._send(
                200,
                b"ok",
                [
                    ("Content-Type", "text/plain"),
                    ("Set-Cookie", "sid=1; Path=/; HttpOnly"),
                    (
                        "Set-Cookie",
                        "theme=dark; Domain=example.com; Secure; SameSite=Lax; "
                        "Expires=Wed, 21 Oct 2037 07:28:00 GMT; Priority=High",
                    ),
                    ("Set-Cookie", "garbage; Path=/"),
                ],
            )
        elif path == "/gzip":
            self._send(
                200,
                gzip.compress(b"compressed hello"),
                [("Content-Type", "text/plain"), ("Content-Encoding", "gzip")],
            )
        elif path == "/deflate":
            self._send(
                200,
                zlib.compress(b"deflated hello"),
                [("Content-Type", "text/plain"), ("Content-Encoding", "deflate")],
            )
        elif path == "/latin1":
            self._send(
                200,
                "café".encode("latin-1"),
                [("Content-Type", "text/plain; charset=ISO-8859-1")],
            )
        elif path == "/unknown-charset":
            self._send(
                200,
                "naïve".encode(),
                [("Content-Type", "text/plain; charset=no-such-charset")],
            )
        elif path == "/no-charset":
            self._send(200, "größe".encode(), [("Content-Type", "text/plain")])
        elif path == "/echo":
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length).decode("utf-8") if length else ""
            payload = {
                "method": self.command,
                "path": self.path,
                "headers": {k: v for k, v in self.headers.items()},
                "body": body,
            }
            self._send(
                200,
                json.dumps(payload).encode(),
                [("Content-Type", "application/json")],
            )
        elif path.startswith("/redirect/"):
            remaining = int(path.rsplit("/", 1)[1])
            target = "/json" if remaining <= 1 else f"/redirect/{remaining - 1}"
            self._send(302, b"", [("Location", target)])
        elif path.startswith("/status/"):
            code = int(path.rsplit("/", 1)[1])
            self._send(code, b"status body", [("Content-Type", "text/plain")])
        elif path == "/stall":
            # Headers and a partial body, then nothing until the client gives up.
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", "10")
            self.end_headers()
            self.wfile.write(b"ab")
            self.wfile.flush()
            time.sleep(3)
        elif path == "/slow":
            time.sleep(2)
            self._send(200, b"finally", [("Content-Type", "text/plain")])
        else:
            self._send(404, b"not found", [("Content-Type", "text/plain")])

    do_GET = _route
    do_POST = _route
    do_PUT = _route
    do_PATCH = _route
    do_DELETE = _route


class _QuietServer(http.server.ThreadingHTTPServer):
    def handle_error(self, request, client_address):
        pass


@pytest.fixture(scope="session")
def http_server():
    """Base URL of an in-process HTTP server on 127.0.0.1."""
    server = _QuietServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def closed_port():
    """A local port with nothing listening on it."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture(autouse=True)
def no_proxy(monkeypatch):
    """Keep requests from routing local test traffic through a proxy."""
    for var in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("NO_PROXY", "*")
    monkeypatch.setenv("no_proxy", "*")


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def global_reqfile_dir(tmp_path, monkeypatch):
    """Override the global ~/.reqfile directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".reqfile"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    return fake_global


def make_execution_result(
    status_code=200,
    body="",
    headers=None,
    total_ms=42.0,
    error=None,
    content_type=None,
    method="GET",
    url="http://localhost:3000/",
):
    """Factory for ExecutionResult objects."""
    r = ExecutionResult()
    r.success = error is None
    r.error = error
    r.request_method = method
    r.request_url = url
    r.status_code = status_code
    r.status_description = "OK" if status_code == 200 else ""
    r.headers = CaseInsensitiveDict(headers or {})
    r.content_type = content_type or r.headers.get("Content-Type")
    r.body = body
    r.body_bytes = body.encode("utf-8")
    r.size_bytes = len(r.body_bytes)
    r.timing.total_ms = total_ms
    return r

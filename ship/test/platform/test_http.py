"""Tests for ship.platform.http module."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from ship.core.result import Err, Ok
from ship.platform.http import HttpClient, HttpError, MockHttpClient, RealHttpClient


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        match self.path:
            case "/ok":
                self._send(200, {"data": [{"id": "1"}]})
            case "/throttled":
                self._send(429, {"errors": [{"detail": "slow down"}]}, headers={"Retry-After": "120"})
            case "/text":
                body = b"not json"
                self.send_response(200)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
            case _:
                self._send(404, {"errors": [{"detail": "missing"}]})

    def do_PATCH(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length", "0"))
        payload = json.loads(self.rfile.read(length))
        assert payload["data"]["type"] == "builds"
        self.send_response(204)
        self.end_headers()

    def _send(self, status: int, payload: object, headers: dict[str, str] | None = None) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        del format, args


@pytest.fixture
def base_url() -> Iterator[str]:
    server = HTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()


class TestHttpError:
    def test_str_with_status(self) -> None:
        error = HttpError(url="https://x/v1/apps", status=403, message="Forbidden")
        assert str(error) == "HTTP 403: Forbidden (https://x/v1/apps)"

    def test_str_network_error(self) -> None:
        error = HttpError(url="https://x", status=0, message="Connection refused")
        assert str(error) == "Connection refused (https://x)"


class TestRealHttpClient:
    def test_is_http_client(self) -> None:
        assert isinstance(RealHttpClient(), HttpClient)

    def test_get_json(self, base_url: str) -> None:
        result = RealHttpClient(timeout=5).request_json("GET", f"{base_url}/ok")
        assert result == Ok({"data": [{"id": "1"}]})

    def test_retry_after_is_parsed(self, base_url: str) -> None:
        result = RealHttpClient(timeout=5).request_json("GET", f"{base_url}/throttled")
        assert isinstance(result, Err)
        assert result.error.status == 429
        assert result.error.retry_after == 120.0
        assert "slow down" in result.error.body

    def test_non_json_body(self, base_url: str) -> None:
        result = RealHttpClient(timeout=5).request_json("GET", f"{base_url}/text")
        assert isinstance(result, Err)
        assert "JSON parse error" in result.error.message

    def test_empty_body_is_none(self, base_url: str) -> None:
        result = RealHttpClient(timeout=5).request_json(
            "PATCH", f"{base_url}/v1/builds/1", body={"data": {"type": "builds", "id": "1"}}
        )
        assert result == Ok(None)

    def test_connection_refused(self) -> None:
        result = RealHttpClient(timeout=2).request_json("GET", "http://127.0.0.1:9/none")
        assert isinstance(result, Err)
        assert result.error.status == 0


class TestMockHttpClient:
    def test_queue_then_repeat_last(self) -> None:
        client = MockHttpClient()
        client.add("GET", "https://x/a", HttpError(url="https://x/a", status=503, message="down"))
        client.add("GET", "https://x/a", {"ok": True})
        assert isinstance(client.request_json("GET", "https://x/a"), Err)
        assert client.request_json("GET", "https://x/a") == Ok({"ok": True})
        assert client.request_json("GET", "https://x/a") == Ok({"ok": True})
        assert len(client.calls_to("GET", "https://x/")) == 3

    def test_unknown_url_is_404(self) -> None:
        result = MockHttpClient().request_json("DELETE", "https://x/b")
        assert isinstance(result, Err)
        assert result.error.status == 404

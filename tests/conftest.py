from __future__ import annotations

import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest
from fakeredis import aioredis as fake_aioredis

from keepalive.store import RedisStore, StorageError


class _SiteHandler(BaseHTTPRequestHandler):
    flaky_calls = 0
    seen_headers: list[dict[str, str]] = []

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _send(self, status: int, body: str = "ok", headers: dict[str, str] | None = None) -> None:
        body_bytes = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        for k, v in (headers or {}).items():
            self.send_header(k, v)
        self.send_header("Content-Length", str(len(body_bytes)))
        self.end_headers()
        self.wfile.write(body_bytes)

    def do_GET(self) -> None:  # noqa: N802
        type(self).seen_headers.append({k.lower(): v for k, v in self.headers.items()})
        if self.path == "/ok":
            self._send(200)
        elif self.path == "/error":
            self._send(500, "boom")
        elif self.path == "/redirect":
            self._send(302, "", {"Location": "/ok"})
        elif self.path == "/flaky":
            type(self).flaky_calls += 1
            if type(self).flaky_calls == 1:
                self._send(503, "warming up")
            else:
                self._send(200)
        else:
            self._send(404, "Not Found")


@pytest.fixture(scope="module")
def local_site_base_url() -> str:
    httpd = HTTPServer(("127.0.0.1", 0), _SiteHandler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture()
def site_handler() -> type[_SiteHandler]:
    _SiteHandler.flaky_calls = 0
    _SiteHandler.seen_headers = []
    return _SiteHandler


@pytest.fixture()
def fake_store() -> RedisStore:
    return RedisStore(fake_aioredis.FakeRedis(decode_responses=True))


class BrokenStore:
    """KeyValueStore whose every operation fails, as when Redis is unreachable."""

    async def get(self, key: str) -> str | None:
        raise StorageError("connection refused")

    async def set(self, key: str, value: str) -> bool:
        raise StorageError("connection refused")

    async def delete(self, key: str) -> bool:
        raise StorageError("connection refused")


@pytest.fixture()
def broken_store() -> BrokenStore:
    return BrokenStore()

from __future__ import annotations

import importlib
import json
import socket
import sys
import threading
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, List

import httpx
import pytest
import uvicorn
import yaml
from fastapi.testclient import TestClient
from websockets.sync.server import serve

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import config


EMBY_HOST = "http://emby.local:8096"


def base_config() -> dict:
    return {
        "server": {"port": 8095},
        "emby": {
            "host": EMBY_HOST,
            "api_key": "config-key",
            "download-strategy": "403",
            "strm": {"path-map": ["/mnt/media => http://cdn.example.com"]},
        },
    }


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def upstream_response(status: int, content: bytes = b"", headers=None, json_body: object | None = None) -> httpx.Response:
    """Build a response whose body is still unread, like one from a real network transport."""

    headers = list(headers or [])
    if json_body is not None:
        content = json.dumps(json_body).encode("utf-8")
        headers.append(("Content-Type", "application/json"))
    headers.append(("Content-Length", str(len(content))))
    return httpx.Response(status, headers=headers, stream=httpx.ByteStream(content))


class FakeEmby:
    """Records upstream requests and answers with configurable handlers."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.media_path = "/mnt/media/movie.mkv"
        self.playback_status = 200
        self.playback_body: object | None = None
        self.proxy_handler: Callable[[httpx.Request], httpx.Response] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.proxy_handler is not None and not request.url.path.endswith("/PlaybackInfo"):
            return self.proxy_handler(request)
        if request.url.path.endswith("/PlaybackInfo"):
            if self.playback_status != 200:
                return upstream_response(self.playback_status, b"nope")
            body = self.playback_body
            if body is None:
                body = {"MediaSources": [{"Path": self.media_path, "Id": "abc"}]}
            return upstream_response(200, json_body=body)
        return upstream_response(
            200,
            headers=[("X-Upstream", "emby")],
            json_body={"proxied": request.url.path, "query": request.url.query.decode()},
        )

    @property
    def playback_calls(self) -> List[httpx.Request]:
        return [req for req in self.requests if req.url.path.endswith("/PlaybackInfo")]


@pytest.fixture()
def write_config(tmp_path: Path) -> Callable[[dict], Path]:
    def _write(data: dict) -> Path:
        path = tmp_path / "config.yml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def emby_config() -> dict:
    return base_config()


@pytest.fixture()
def fake_emby() -> FakeEmby:
    return FakeEmby()


@pytest.fixture()
def make_client(
    write_config: Callable[[dict], Path],
    fake_emby: FakeEmby,
    monkeypatch: pytest.MonkeyPatch,
) -> Callable[[dict | None], TestClient]:
    def _make(data: dict | None = None) -> TestClient:
        path = write_config(data or base_config())
        monkeypatch.setenv("EMBY302_CONFIG", str(path))
        config.reset_settings_cache()
        from app.emby import http_client

        transport = httpx.MockTransport(fake_emby)

        def _client_factory() -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=transport, follow_redirects=False)

        monkeypatch.setattr(http_client, "create_http_client", _client_factory)
        module = importlib.import_module("app.main")
        importlib.reload(module)
        return TestClient(module.create_app(), follow_redirects=False)

    yield _make
    config.reset_settings_cache()


@pytest.fixture()
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture()
def live_server():
    """Serve an app with a real uvicorn server on a background thread; returns its base URL."""

    running = []

    def _serve(app) -> str:
        port = free_port()
        server = uvicorn.Server(
            uvicorn.Config(app, host="127.0.0.1", port=port, lifespan="off", log_level="warning")
        )
        thread = threading.Thread(target=server.run, daemon=True)
        thread.start()
        running.append((server, thread))
        deadline = time.monotonic() + 10
        while not server.started:
            if time.monotonic() > deadline or not thread.is_alive():
                raise RuntimeError("uvicorn did not start")
            time.sleep(0.01)
        return f"http://127.0.0.1:{port}"

    yield _serve
    for server, thread in running:
        server.should_exit = True
        thread.join(timeout=5)


@pytest.fixture()
def websocket_upstream():
    """Echo WebSocket server standing in for Emby; sending "bye" makes it close with 4001."""

    requests = []

    def handler(connection) -> None:
        requests.append(connection.request)
        for message in connection:
            if message == "bye":
                connection.close(code=4001, reason="session ended")
                return
            connection.send(message)

    server = serve(handler, "127.0.0.1", 0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    port = server.socket.getsockname()[1]
    yield SimpleNamespace(host=f"http://127.0.0.1:{port}", requests=requests)
    server.shutdown()
    thread.join(timeout=5)

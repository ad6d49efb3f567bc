"""Shared fixtures for cbt_tunnel tests."""

from __future__ import annotations

import os
import stat
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Iterator

import pytest

from cbt_tunnel.config import ENV_VARS
from cbt_tunnel.supervisor import terminate_live_handles

from tests.cbt_tunnel.stubs import STUB_RUNTIME


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the config home at tmp_path and clear CBT_* variables."""
    home = tmp_path / "cbt-home"
    monkeypatch.setenv("CBT_TUNNEL_HOME", str(home))
    for env_var in ENV_VARS:
        monkeypatch.delenv(env_var, raising=False)
    return home


@pytest.fixture(autouse=True)
def kill_leftover_tunnels() -> Iterator[None]:
    """Never leave stub tunnel processes running after a test."""
    yield
    terminate_live_handles()


@pytest.fixture
def stub_runtime(tmp_path: Path) -> Path:
    """An executable that accepts ``-jar <file> -authkey <key>`` like java."""
    path = tmp_path / "fake-java"
    path.write_text(STUB_RUNTIME.format(python=sys.executable), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def write_jar(tmp_path: Path):
    """Write a stub jar script and return its path."""

    def _write(source: str, name: str = "cbttunnel.jar") -> Path:
        path = tmp_path / "jars" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(source, encoding="utf-8")
        return path

    return _write


class _StaticServer:
    """Serves fixed bodies by path on 127.0.0.1 and counts requests."""

    def __init__(self) -> None:
        self.routes: dict[str, bytes] = {}
        self.requests: list[str] = []
        server = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                server.requests.append(self.path)
                body = server.routes.get(self.path)
                if body is None:
                    self.send_response(404)
                    self.send_header("Content-Length", "0")
                    self.end_headers()
                    return
                self.send_response(200)
                self.send_header("Content-Type", "application/java-archive")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: object) -> None:
                pass

        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)

    @property
    def base_url(self) -> str:
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}"

    def url(self, path: str) -> str:
        return self.base_url + path

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._httpd.shutdown()
        self._httpd.server_close()


@pytest.fixture
def jar_server() -> Iterator[_StaticServer]:
    """Local HTTP server; add bodies to ``jar_server.routes``."""
    server = _StaticServer()
    server.start()
    try:
        yield server
    finally:
        server.stop()


@pytest.fixture
def fresh_bin_path(tmp_path: Path) -> Path:
    """Destination for the tunnel jar that does not exist yet."""
    path = tmp_path / "bin" / "cbttunnel.jar"
    assert not os.path.lexists(path)
    return path

"""Tests for the tunnel binary fetcher.

Covers:
- Cache hit performs no network request
- Cache miss downloads exactly once and creates parent directories
- Failed downloads (HTTP status, connect error, mid-stream error) leave no file
"""

from __future__ import annotations

import io
import os
import sys
from pathlib import Path

import httpx
import pytest
from rich.console import Console

from cbt_tunnel.errors import FetchError, TunnelError
from cbt_tunnel.fetch import BinaryArtifact, FetchRequest, ensure_local, fetch

URL = "http://cbt.test/cbttunnel.jar"
JAR_BYTES = b"PK\x03\x04" + b"x" * 20000


class _FailingStream(httpx.SyncByteStream):
    """Yields some bytes, then drops the connection."""

    def __iter__(self):
        yield b"partial-jar-bytes"
        raise httpx.ReadError("connection reset by peer")


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def requests_seen() -> list[httpx.Request]:
    return []


@pytest.fixture
def ok_client(requests_seen: list[httpx.Request]) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request)
        return httpx.Response(200, content=JAR_BYTES)

    return _client(handler)


class TestCacheHit:
    def test_existing_file_is_returned_without_network(
        self, tmp_path: Path, ok_client: httpx.Client, requests_seen: list
    ):
        dest = tmp_path / "cbttunnel.jar"
        dest.write_bytes(b"old jar")

        artifact = ensure_local(URL, dest, client=ok_client)

        assert artifact == BinaryArtifact(path=dest, downloaded=False)
        assert requests_seen == []
        assert dest.read_bytes() == b"old jar"

    def test_empty_existing_file_still_counts(
        self, tmp_path: Path, ok_client: httpx.Client, requests_seen: list
    ):
        dest = tmp_path / "cbttunnel.jar"
        dest.touch()

        assert ensure_local(URL, dest, client=ok_client).downloaded is False
        assert requests_seen == []

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges")
    def test_dangling_symlink_counts_as_present(
        self, tmp_path: Path, ok_client: httpx.Client, requests_seen: list
    ):
        dest = tmp_path / "cbttunnel.jar"
        dest.symlink_to(tmp_path / "missing-target.jar")

        assert ensure_local(URL, dest, client=ok_client).path == dest
        assert requests_seen == []


class TestDownload:
    def test_downloads_once_into_new_directories(
        self, tmp_path: Path, ok_client: httpx.Client, requests_seen: list
    ):
        dest = tmp_path / "a" / "b" / "bin" / "cbttunnel.jar"

        artifact = ensure_local(URL, dest, client=ok_client)

        assert artifact.downloaded is True
        assert artifact.size_bytes == len(JAR_BYTES)
        assert dest.read_bytes() == JAR_BYTES
        assert len(requests_seen) == 1
        assert str(requests_seen[0].url) == URL

    def test_second_call_is_a_cache_hit(
        self, tmp_path: Path, ok_client: httpx.Client, requests_seen: list
    ):
        dest = tmp_path / "bin" / "cbttunnel.jar"

        first = ensure_local(URL, dest, client=ok_client)
        second = ensure_local(URL, dest, client=ok_client)

        assert first.downloaded is True
        assert second.downloaded is False
        assert len(requests_seen) == 1

    def test_existing_parent_directory_is_fine(self, tmp_path: Path, ok_client: httpx.Client):
        (tmp_path / "bin").mkdir()
        dest = tmp_path / "bin" / "cbttunnel.jar"

        assert ensure_local(URL, dest, client=ok_client).downloaded is True

    def test_follows_redirects(self, tmp_path: Path):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old.jar":
                return httpx.Response(302, headers={"Location": "http://cbt.test/new.jar"})
            return httpx.Response(200, content=JAR_BYTES)

        dest = tmp_path / "cbttunnel.jar"
        ensure_local("http://cbt.test/old.jar", dest, client=_client(handler))

        assert dest.read_bytes() == JAR_BYTES

    def test_progress_bar_download(self, tmp_path: Path, ok_client: httpx.Client):
        dest = tmp_path / "cbttunnel.jar"
        console = Console(file=io.StringIO(), force_terminal=False)

        artifact = fetch(
            FetchRequest.create(URL, dest),
            client=ok_client,
            show_progress=True,
            console=console,
        )

        assert artifact.size_bytes == len(JAR_BYTES)
        assert dest.read_bytes() == JAR_BYTES

    def test_accepts_string_paths(self, tmp_path: Path, ok_client: httpx.Client):
        dest = str(tmp_path / "bin" / "cbttunnel.jar")

        artifact = ensure_local(URL, dest, client=ok_client)

        assert artifact.path == Path(dest)


class TestFailures:
    def test_http_error_status_raises_and_leaves_no_file(self, tmp_path: Path):
        dest = tmp_path / "bin" / "cbttunnel.jar"
        client = _client(lambda request: httpx.Response(404, content=b"not found"))

        with pytest.raises(FetchError, match="HTTP 404") as exc_info:
            ensure_local(URL, dest, client=client)

        assert exc_info.value.url == URL
        assert not os.path.lexists(dest)

    def test_connect_error_raises_and_leaves_no_file(self, tmp_path: Path):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        dest = tmp_path / "bin" / "cbttunnel.jar"

        with pytest.raises(FetchError) as exc_info:
            ensure_local(URL, dest, client=_client(handler))

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert not os.path.lexists(dest)

    def test_mid_stream_failure_removes_partial_file(self, tmp_path: Path):
        dest = tmp_path / "bin" / "cbttunnel.jar"
        client = _client(lambda request: httpx.Response(200, stream=_FailingStream()))

        with pytest.raises(FetchError, match="connection reset"):
            ensure_local(URL, dest, client=client)

        assert not os.path.lexists(dest)

    def test_malformed_content_length_downloads_without_progress(self, tmp_path: Path):
        dest = tmp_path / "bin" / "cbttunnel.jar"
        client = _client(
            lambda request: httpx.Response(
                200, headers={"content-length": "abc"}, content=JAR_BYTES
            )
        )
        console = Console(file=io.StringIO(), force_terminal=True)

        artifact = ensure_local(URL, dest, client=client, show_progress=True, console=console)

        assert artifact.downloaded is True
        assert dest.read_bytes() == JAR_BYTES
        assert "Downloading tunnel" not in console.file.getvalue()

    def test_retry_after_failure_downloads_again(self, tmp_path: Path):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(200, stream=_FailingStream())
            return httpx.Response(200, content=JAR_BYTES)

        dest = tmp_path / "cbttunnel.jar"
        client = _client(handler)

        with pytest.raises(FetchError):
            ensure_local(URL, dest, client=client)
        artifact = ensure_local(URL, dest, client=client)

        assert artifact.downloaded is True
        assert dest.read_bytes() == JAR_BYTES
        assert calls["n"] == 2

    def test_unwritable_parent_raises_fetch_error(self, tmp_path: Path, ok_client: httpx.Client):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file in the way")
        dest = blocker / "cbttunnel.jar"

        with pytest.raises(FetchError, match="Cannot create directory"):
            ensure_local(URL, dest, client=ok_client)

    def test_unreadable_destination_raises_fetch_error(
        self, tmp_path: Path, ok_client: httpx.Client, requests_seen: list, monkeypatch
    ):
        dest = tmp_path / "locked" / "cbttunnel.jar"
        original_lstat = Path.lstat

        def lstat(self, *args, **kwargs):
            if self == dest:
                raise PermissionError(13, "Permission denied", str(self))
            return original_lstat(self, *args, **kwargs)

        monkeypatch.setattr(Path, "lstat", lstat)

        with pytest.raises(FetchError, match="Cannot check") as exc_info:
            ensure_local(URL, dest, client=ok_client)

        assert isinstance(exc_info.value.__cause__, PermissionError)
        assert requests_seen == []

    def test_fetch_error_is_a_tunnel_error(self):
        assert issubclass(FetchError, TunnelError)


class TestLocalServer:
    def test_downloads_from_real_http_server(self, jar_server, fresh_bin_path: Path):
        jar_server.routes["/cbttunnel.jar"] = JAR_BYTES

        artifact = ensure_local(jar_server.url("/cbttunnel.jar"), fresh_bin_path)

        assert artifact.downloaded is True
        assert fresh_bin_path.read_bytes() == JAR_BYTES
        assert jar_server.requests == ["/cbttunnel.jar"]

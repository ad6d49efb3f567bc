"""Fetch the tunnel binary to a local path.

``ensure_local()`` returns immediately when anything already exists at the
destination (presence alone counts, no staleness check). On a cache miss it
creates the parent directories and streams the HTTP(S) response to disk.
A failed download never leaves a truncated file behind.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import httpx
from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, SpinnerColumn, TextColumn

from cbt_tunnel.errors import FetchError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
DOWNLOAD_TIMEOUT_SECONDS = 60.0


@dataclass(frozen=True)
class FetchRequest:
    """Where to download the binary from and where to put it."""

    source_url: str
    destination_path: Path

    @classmethod
    def create(cls, source_url: str, destination_path: str | os.PathLike[str]) -> FetchRequest:
        return cls(source_url=source_url, destination_path=Path(destination_path))


@dataclass(frozen=True)
class BinaryArtifact:
    """A local binary that is known to exist."""

    path: Path
    downloaded: bool = False
    """True if this call downloaded the file, False on a cache hit."""

    size_bytes: int | None = None


def _exists(path: Path, source_url: str) -> bool:
    """lstat-style presence check; a dangling symlink still counts."""
    try:
        path.lstat()
    except (FileNotFoundError, NotADirectoryError):
        return False
    except OSError as e:
        raise FetchError(f"Cannot check {path}: {e}", url=source_url) from e
    return True


def _content_length(response: httpx.Response) -> int:
    """Declared body size, or 0 when absent or malformed."""
    value = response.headers.get("content-length", "")
    try:
        return max(int(value), 0)
    except ValueError:
        if value:
            logger.debug("Ignoring malformed Content-Length %r", value)
        return 0


def _remove_partial(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove partial download %s: %s", path, e)


def _stream_to_file(
    client: httpx.Client,
    request: FetchRequest,
    *,
    show_progress: bool,
    console: Console | None,
) -> int:
    """Stream the response body into ``request.destination_path``.

    Returns:
        Number of bytes written.
    """
    written = 0
    with client.stream(
        "GET",
        request.source_url,
        timeout=DOWNLOAD_TIMEOUT_SECONDS,
        follow_redirects=True,
    ) as response:
        if response.status_code != 200:
            raise FetchError(
                f"Download of {request.source_url} failed with HTTP {response.status_code}",
                url=request.source_url,
            )
        total_size = _content_length(response)

        with open(request.destination_path, "wb") as f:
            if show_progress and total_size:
                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    BarColumn(),
                    DownloadColumn(),
                    console=console,
                    transient=True,
                ) as progress:
                    task = progress.add_task("Downloading tunnel...", total=total_size)
                    for chunk in response.iter_bytes(chunk_size=CHUNK_SIZE):
                        f.write(chunk)
                        written += len(chunk)
                        progress.update(task, completed=written)
            else:
                for chunk in response.iter_bytes(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
                    written += len(chunk)
    return written


def fetch(
    request: FetchRequest,
    *,
    client: httpx.Client | None = None,
    show_progress: bool = False,
    console: Console | None = None,
) -> BinaryArtifact:
    """Resolve ``request`` to a local binary, downloading on cache miss.

    Args:
        request: Source URL and destination path
        client: HTTP client to use; a private one is created and closed if omitted
        show_progress: Render a rich progress bar while downloading
        console: Console for the progress bar

    Returns:
        BinaryArtifact for the destination path

    Raises:
        FetchError: On any network, HTTP or filesystem failure. The
            destination path does not exist afterwards.
    """
    destination = request.destination_path

    if _exists(destination, request.source_url):
        logger.debug("Using cached tunnel binary at %s", destination)
        return BinaryArtifact(path=destination, downloaded=False)

    logger.info("%s not present; downloading from %s", destination, request.source_url)

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FetchError(
            f"Cannot create directory {destination.parent}: {e}",
            url=request.source_url,
        ) from e

    owns_client = client is None
    if client is None:
        client = httpx.Client()

    try:
        size = _stream_to_file(client, request, show_progress=show_progress, console=console)
    except FetchError:
        _remove_partial(destination)
        raise
    except (httpx.HTTPError, OSError) as e:
        _remove_partial(destination)
        raise FetchError(
            f"Error downloading {request.source_url}: {e}", url=request.source_url
        ) from e
    except BaseException:
        # Interrupted mid-stream; still never leave a truncated file
        _remove_partial(destination)
        raise
    finally:
        if owns_client:
            client.close()

    logger.info("Downloaded %s (%d bytes)", destination, size)
    return BinaryArtifact(path=destination, downloaded=True, size_bytes=size)


def ensure_local(
    source_url: str,
    destination_path: str | os.PathLike[str],
    *,
    client: httpx.Client | None = None,
    show_progress: bool = False,
    console: Console | None = None,
) -> BinaryArtifact:
    """Make sure a binary exists at ``destination_path``.

    Convenience wrapper around ``fetch()`` taking plain arguments.
    """
    return fetch(
        FetchRequest.create(source_url, destination_path),
        client=client,
        show_progress=show_progress,
        console=console,
    )


__all__ = [
    "BinaryArtifact",
    "FetchRequest",
    "ensure_local",
    "fetch",
]

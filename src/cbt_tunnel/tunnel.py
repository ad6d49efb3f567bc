"""Tunnel controller: download, spawn and wait for a connected tunnel.

Example usage::

    from cbt_tunnel import Tunnel

    handle = Tunnel(api_key="...").run_tunnel()
    try:
        ...  # run tests through the tunnel
    finally:
        handle.kill()

or, with cleanup handled for you::

    with Tunnel(api_key="...").open() as handle:
        ...
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import httpx
from rich.console import Console

from cbt_tunnel.config import TunnelConfig, apply_overrides, load_config
from cbt_tunnel.errors import TunnelError
from cbt_tunnel.fetch import BinaryArtifact, FetchRequest, fetch
from cbt_tunnel.supervisor import ProcessHandle, ProcessSupervisor, SupervisorState

logger = logging.getLogger(__name__)

StateCallback = Callable[[SupervisorState, str], None]


class Tunnel:
    """Runs one CBT tunnel from configuration to a connected process.

    Args:
        config: Full configuration; built with ``load_config(**overrides)``
            when omitted
        client: HTTP client for the binary download
        console: Console for download progress
        show_progress: Show a progress bar while downloading
        on_state_change: Called with ``(state, detail)`` on every transition
        **overrides: TunnelConfig fields; applied on top of ``config`` when
            one is given
    """

    def __init__(
        self,
        config: TunnelConfig | None = None,
        *,
        client: httpx.Client | None = None,
        console: Console | None = None,
        show_progress: bool = False,
        on_state_change: StateCallback | None = None,
        **overrides: Any,
    ) -> None:
        if config is None:
            config = load_config(**overrides)
        elif overrides:
            config = apply_overrides(config, **overrides)
        self.config = config
        self.client = client
        self.console = console
        self.show_progress = show_progress
        self.on_state_change = on_state_change
        self.supervisor = ProcessSupervisor(
            java_path=self.config.java_path,
            ready_token=self.config.ready_token,
        )
        self.state = SupervisorState.IDLE
        self.artifact: BinaryArtifact | None = None

    def _transition(self, state: SupervisorState, detail: str = "") -> None:
        logger.debug("Tunnel state %s -> %s %s", self.state.value, state.value, detail)
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state, detail)

    def download_tunnel_bin(self) -> BinaryArtifact:
        """Fetch the tunnel jar, or reuse the one already on disk."""
        self._transition(SupervisorState.FETCHING, self.config.tunnel_bin_path)
        self.artifact = fetch(
            FetchRequest.create(self.config.tunnel_bin_url, self.config.tunnel_bin_path),
            client=self.client,
            show_progress=self.show_progress,
            console=self.console,
        )
        return self.artifact

    def spawn_tunnel_proc(self, artifact: BinaryArtifact) -> ProcessHandle:
        self._transition(SupervisorState.SPAWNING, str(artifact.path))
        return self.supervisor.launch(artifact, self.config.api_key or "")

    def await_tunnel_startup(self, handle: ProcessHandle) -> ProcessHandle:
        timeout_ms = self.config.tunnel_startup_timeout_ms
        self._transition(
            SupervisorState.AWAITING_READINESS, f"pid {handle.pid}, up to {timeout_ms}ms"
        )
        return self.supervisor.await_ready(handle, timeout_ms)

    def run_tunnel(self) -> ProcessHandle:
        """Download, spawn and wait for a connected tunnel.

        Returns:
            A running, connected ProcessHandle. The caller must terminate it.

        Raises:
            ConfigurationError: Before any side effect, if the config is unusable.
            FetchError: If the jar cannot be downloaded.
            SpawnError: If the process cannot be started.
            TunnelTimeoutError: If the tunnel never connected (process killed).
        """
        if self.state is not SupervisorState.IDLE:
            raise RuntimeError(f"Tunnel already ran (state={self.state.value})")

        self.config.validate()
        handle: ProcessHandle | None = None
        try:
            artifact = self.download_tunnel_bin()
            handle = self.spawn_tunnel_proc(artifact)
            self.await_tunnel_startup(handle)
        except BaseException as e:
            if handle is not None:
                handle.terminate()
            detail = str(e) if isinstance(e, TunnelError) else type(e).__name__
            self._transition(SupervisorState.FAILED, detail)
            raise

        self._transition(SupervisorState.READY, f"pid {handle.pid}")
        return handle

    @contextmanager
    def open(self) -> Iterator[ProcessHandle]:
        """Context manager yielding a connected tunnel, killed on exit."""
        handle = self.run_tunnel()
        try:
            yield handle
        finally:
            handle.terminate()

    def close(self) -> bool:
        """Terminate the tunnel launched by this controller, if any."""
        return self.supervisor.terminate()


def run_tunnel(config: TunnelConfig | None = None, **overrides: Any) -> ProcessHandle:
    """One-shot helper: ``Tunnel(config, **overrides).run_tunnel()``."""
    return Tunnel(config, **overrides).run_tunnel()


__all__ = ["StateCallback", "Tunnel", "run_tunnel"]

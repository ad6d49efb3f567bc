"""``cbt-tunnel run`` and ``cbt-tunnel fetch`` commands."""

from __future__ import annotations

import signal
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from cbt_tunnel.cli.ui import pipeline_tracker, print_error, print_ready_notice, track_state
from cbt_tunnel.config import load_config
from cbt_tunnel.errors import TunnelError
from cbt_tunnel.fetch import ensure_local
from cbt_tunnel.tunnel import Tunnel

console = Console()

POLL_INTERVAL_SECONDS = 0.5


def _raise_system_exit(signum, frame):
    raise SystemExit(128 + signum)


def run(
    api_key: Optional[str] = typer.Option(
        None, "--api-key", "-k", help="CBT API key (or CBT_API_KEY)"
    ),
    bin_path: Optional[str] = typer.Option(
        None, "--bin-path", help="Local path of cbttunnel.jar"
    ),
    bin_url: Optional[str] = typer.Option(
        None, "--bin-url", help="URL to download cbttunnel.jar from"
    ),
    timeout: Optional[int] = typer.Option(
        None, "--timeout", "-t", help="Startup timeout in milliseconds"
    ),
    java: Optional[str] = typer.Option(None, "--java", help="Java executable"),
    config_file: Optional[Path] = typer.Option(
        None, "--config", help="Config file (default: ~/.cbt-tunnel/config.toml)"
    ),
    exit_when_ready: bool = typer.Option(
        False,
        "--exit-when-ready",
        help="Stop the tunnel and exit 0 as soon as it connects (smoke test)",
    ),
) -> None:
    """Start the tunnel and keep it up until interrupted (Ctrl+C)."""
    tracker = pipeline_tracker()

    original_sigterm = signal.getsignal(signal.SIGTERM)
    signal.signal(signal.SIGTERM, _raise_system_exit)
    try:
        try:
            config = load_config(
                config_file,
                api_key=api_key,
                tunnel_bin_path=bin_path,
                tunnel_bin_url=bin_url,
                tunnel_startup_timeout_ms=timeout,
                java_path=java,
            )
            tunnel = Tunnel(
                config,
                console=console,
                show_progress=True,
                on_state_change=lambda state, detail: track_state(tracker, state, detail),
            )
            handle = tunnel.run_tunnel()
        except TunnelError as e:
            console.print(tracker.render())
            print_error(console, "Tunnel Error", str(e))
            raise typer.Exit(1)

        console.print(tracker.render())
        print_ready_notice(console)

        with handle:
            if exit_when_ready:
                return
            console.print("[dim]Press Ctrl+C to stop the tunnel[/dim]")
            try:
                while not handle.is_terminated:
                    time.sleep(POLL_INTERVAL_SECONDS)
            except KeyboardInterrupt:
                console.print("\n[yellow]Stopping tunnel...[/yellow]")
                return

        tail = "\n".join(list(handle.recent_output)[-10:]) or "(no output)"
        print_error(
            console,
            f"Tunnel exited (code {handle.returncode})",
            tail,
        )
        raise typer.Exit(1)
    finally:
        signal.signal(signal.SIGTERM, original_sigterm)


def fetch(
    bin_path: Optional[str] = typer.Option(
        None, "--bin-path", help="Local path of cbttunnel.jar"
    ),
    bin_url: Optional[str] = typer.Option(
        None, "--bin-url", help="URL to download cbttunnel.jar from"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", help="Config file (default: ~/.cbt-tunnel/config.toml)"
    ),
) -> None:
    """Download the tunnel jar if it is not already present."""
    try:
        config = load_config(config_file, tunnel_bin_path=bin_path, tunnel_bin_url=bin_url)
        config.validate(require_credential=False)
        artifact = ensure_local(
            config.tunnel_bin_url,
            config.tunnel_bin_path,
            show_progress=True,
            console=console,
        )
    except TunnelError as e:
        print_error(console, "Fetch Error", str(e))
        raise typer.Exit(1)

    if artifact.downloaded:
        console.print(f"[green]Downloaded[/green] {artifact.path} ({artifact.size_bytes:,} bytes)")
    else:
        console.print(f"[cyan]Already present:[/cyan] {artifact.path}")

"""``cbt-tunnel config`` command.

Without options, shows the resolved tunnel configuration. With options,
stores them in the config file first.
"""

from __future__ import annotations

from dataclasses import fields, replace
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from cbt_tunnel.cli.ui import print_error
from cbt_tunnel.config import (
    ENV_VARS,
    TunnelConfig,
    get_config_file,
    load_config,
    load_file_config,
    save_config,
)
from cbt_tunnel.errors import TunnelError

console = Console()


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "****"
    return "****" + value[-4:]


def render_config(config: TunnelConfig, config_file: Path) -> Table:
    env_by_field = {name: env for env, name in ENV_VARS.items()}
    table = Table(title=f"Tunnel configuration ({config_file})")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="bold")
    table.add_column("Env var", style="dim")

    for f in fields(TunnelConfig):
        value = getattr(config, f.name)
        if value is None:
            display = "[red]not set[/red]"
        elif f.name == "api_key":
            display = _mask(str(value))
        else:
            display = str(value)
        table.add_row(f.name, display, env_by_field.get(f.name, ""))
    return table


def config(
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Store the CBT API key"),
    bin_path: Optional[str] = typer.Option(None, "--bin-path", help="Store the jar path"),
    bin_url: Optional[str] = typer.Option(None, "--bin-url", help="Store the jar URL"),
    timeout: Optional[int] = typer.Option(
        None, "--timeout", help="Store the startup timeout (ms)"
    ),
    java: Optional[str] = typer.Option(None, "--java", help="Store the Java executable"),
    config_file: Optional[Path] = typer.Option(
        None, "--config", help="Config file (default: ~/.cbt-tunnel/config.toml)"
    ),
) -> None:
    """Show or update the stored tunnel configuration."""
    target = config_file or get_config_file()
    updates = {
        "api_key": api_key,
        "tunnel_bin_path": bin_path,
        "tunnel_bin_url": bin_url,
        "tunnel_startup_timeout_ms": timeout,
        "java_path": java,
    }
    updates = {k: v for k, v in updates.items() if v is not None}

    try:
        if updates:
            stored = replace(load_file_config(target), **updates)
            stored.validate(require_credential=False)
            save_config(stored, target)
            console.print(f"[green]Saved[/green] {', '.join(sorted(updates))} to {target}")
        resolved = load_config(target)
    except TunnelError as e:
        print_error(console, "Config Error", str(e))
        raise typer.Exit(1)

    console.print(render_config(resolved, target))

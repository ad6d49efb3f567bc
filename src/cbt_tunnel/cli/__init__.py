"""Command line interface for cbt-tunnel.

    cbt-tunnel run --api-key KEY     start the tunnel, stop it on Ctrl+C
    cbt-tunnel fetch                 download cbttunnel.jar if missing
    cbt-tunnel config --api-key KEY  store settings in ~/.cbt-tunnel/config.toml
"""

from __future__ import annotations

import logging
import sys

import typer
from rich.console import Console

from cbt_tunnel import __version__
from cbt_tunnel.cli.commands import config, fetch, run

console = Console()

app = typer.Typer(
    name="cbt-tunnel",
    help="Download, start and supervise the CrossBrowserTesting tunnel",
    add_completion=False,
    no_args_is_help=True,
)

app.command()(run)
app.command()(fetch)
app.command()(config)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"cbt-tunnel {__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit",
    ),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def main():
    app()

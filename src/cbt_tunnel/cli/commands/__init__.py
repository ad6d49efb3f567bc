"""CLI command modules for cbt-tunnel."""

from cbt_tunnel.cli.commands.config_cmd import config
from cbt_tunnel.cli.commands.tunnel import fetch, run

__all__ = ["config", "fetch", "run"]

"""Tunnel configuration.

Settings are resolved in this order (first wins):

    1. Keyword overrides passed to ``load_config()``
    2. ``CBT_*`` environment variables
    3. The ``[tunnel]`` table of ``~/.cbt-tunnel/config.toml``
    4. Built-in defaults

The API key has no default. ``TunnelConfig.validate()`` fails fast with
``ConfigurationError`` so that nothing is downloaded or spawned for an
unusable configuration.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import toml  # type: ignore[import-untyped]

from cbt_tunnel.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TUNNEL_BIN_PATH = "./bin/cbttunnel.jar"
DEFAULT_TUNNEL_BIN_URL = "http://crossbrowsertesting.com/cbttunnel.jar"
DEFAULT_STARTUP_TIMEOUT_MS = 1000 * 60 * 2
DEFAULT_JAVA_PATH = "java"
DEFAULT_READY_TOKEN = "CONNECTED"

# Environment variable -> TunnelConfig field
ENV_VARS: dict[str, str] = {
    "CBT_API_KEY": "api_key",
    "CBT_TUNNEL_BIN_PATH": "tunnel_bin_path",
    "CBT_TUNNEL_BIN_URL": "tunnel_bin_url",
    "CBT_TUNNEL_STARTUP_TIMEOUT": "tunnel_startup_timeout_ms",
    "CBT_JAVA_PATH": "java_path",
}


def get_config_home() -> Path:
    """Return the directory holding the user config file.

    ``CBT_TUNNEL_HOME`` overrides the default ``~/.cbt-tunnel``.
    """
    if env_home := os.environ.get("CBT_TUNNEL_HOME"):
        return Path(env_home)
    return Path.home() / ".cbt-tunnel"


def get_config_file() -> Path:
    return get_config_home() / "config.toml"


@dataclass
class TunnelConfig:
    """Settings for one tunnel controller.

    Attributes:
        api_key: CrossBrowserTesting API key passed as ``-authkey``
        tunnel_bin_path: Local path of the tunnel jar (downloaded if absent)
        tunnel_bin_url: Where to download the jar from
        tunnel_startup_timeout_ms: Deadline for the readiness line
        java_path: Runtime used to launch the jar
        ready_token: Text that marks a connected tunnel in its output
    """

    api_key: str | None = None
    tunnel_bin_path: str = DEFAULT_TUNNEL_BIN_PATH
    tunnel_bin_url: str = DEFAULT_TUNNEL_BIN_URL
    tunnel_startup_timeout_ms: int = DEFAULT_STARTUP_TIMEOUT_MS
    java_path: str = DEFAULT_JAVA_PATH
    ready_token: str = DEFAULT_READY_TOKEN

    def validate(self, *, require_credential: bool = True) -> None:
        """Check the configuration can drive a tunnel.

        Args:
            require_credential: Treat a missing API key as an error

        Raises:
            ConfigurationError: If any setting is missing or malformed.
        """
        if require_credential and (not self.api_key or not str(self.api_key).strip()):
            raise ConfigurationError(
                "No API key configured. Pass --api-key, set CBT_API_KEY, "
                f"or add api_key to the [tunnel] table of {get_config_file()}"
            )

        scheme = urlparse(self.tunnel_bin_url).scheme
        if scheme not in ("http", "https"):
            raise ConfigurationError(
                f"tunnel_bin_url must be an http(s) URL, got: {self.tunnel_bin_url!r}"
            )

        if not self.tunnel_bin_path:
            raise ConfigurationError("tunnel_bin_path must not be empty")

        if (
            isinstance(self.tunnel_startup_timeout_ms, bool)
            or not isinstance(self.tunnel_startup_timeout_ms, int)
            or self.tunnel_startup_timeout_ms <= 0
        ):
            raise ConfigurationError(
                "tunnel_startup_timeout_ms must be a positive integer, "
                f"got: {self.tunnel_startup_timeout_ms!r}"
            )

        if not self.java_path:
            raise ConfigurationError("java_path must not be empty")

        if not self.ready_token:
            raise ConfigurationError("ready_token must not be empty")


def _coerce_timeout(value: Any, source: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid startup timeout in {source}: {value!r}"
        ) from e


def _load_file_settings(config_file: Path) -> dict[str, Any]:
    """Read the ``[tunnel]`` table from a TOML config file."""
    if not config_file.exists():
        return {}

    try:
        data: dict[str, Any] = toml.load(config_file)
    except (toml.TomlDecodeError, OSError) as e:
        raise ConfigurationError(f"Invalid TOML in {config_file}: {e}") from e

    section = data.get("tunnel")
    if section is None:
        logger.debug("No [tunnel] table in %s", config_file)
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"[tunnel] in {config_file} must be a table")

    known = {f.name for f in fields(TunnelConfig)}
    unknown = sorted(set(section) - known)
    if unknown:
        logger.warning(
            "Ignoring unknown key(s) in %s: %s", config_file, ", ".join(unknown)
        )

    settings = {k: v for k, v in section.items() if k in known}
    if "tunnel_startup_timeout_ms" in settings:
        settings["tunnel_startup_timeout_ms"] = _coerce_timeout(
            settings["tunnel_startup_timeout_ms"], str(config_file)
        )
    return settings


def load_file_config(config_file: Path | None = None) -> TunnelConfig:
    """Build a TunnelConfig from the config file and defaults only."""
    return TunnelConfig(**_load_file_settings(config_file or get_config_file()))


def _load_env_settings() -> dict[str, Any]:
    settings: dict[str, Any] = {}
    for env_var, field_name in ENV_VARS.items():
        value = os.environ.get(env_var)
        if value is None or value == "":
            continue
        if field_name == "tunnel_startup_timeout_ms":
            settings[field_name] = _coerce_timeout(value, env_var)
        else:
            settings[field_name] = value
    return settings


def _check_overrides(overrides: dict[str, Any]) -> dict[str, Any]:
    """Reject unknown setting names and drop ``None`` values."""
    known = {f.name for f in fields(TunnelConfig)}
    unknown = sorted(k for k in overrides if k not in known)
    if unknown:
        raise ConfigurationError(f"Unknown tunnel setting(s): {', '.join(unknown)}")
    return {k: v for k, v in overrides.items() if v is not None}


def apply_overrides(config: TunnelConfig, **overrides: Any) -> TunnelConfig:
    """Copy of ``config`` with non-None ``overrides`` applied.

    Raises:
        ConfigurationError: If an override names an unknown setting.
    """
    return replace(config, **_check_overrides(overrides))


def load_config(config_file: Path | None = None, **overrides: Any) -> TunnelConfig:
    """Build a TunnelConfig from file, environment and explicit overrides.

    Overrides whose value is ``None`` are ignored, so CLI options can be
    passed straight through.

    Args:
        config_file: TOML file to read (defaults to ``get_config_file()``)
        **overrides: TunnelConfig field values that take precedence

    Returns:
        Unvalidated TunnelConfig

    Raises:
        ConfigurationError: If the file is unreadable or a value is malformed
            or an override names an unknown setting.
    """
    explicit = _check_overrides(overrides)

    settings = _load_file_settings(config_file or get_config_file())
    settings.update(_load_env_settings())
    settings.update(explicit)
    return TunnelConfig(**settings)


def save_config(config: TunnelConfig, config_file: Path | None = None) -> Path:
    """Write ``config`` to the ``[tunnel]`` table, keeping other tables."""
    config_file = config_file or get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {}
    if config_file.exists():
        data = toml.load(config_file)

    data["tunnel"] = {
        f.name: getattr(config, f.name)
        for f in fields(TunnelConfig)
        if getattr(config, f.name) is not None
    }

    with open(config_file, "w", encoding="utf-8") as f:
        toml.dump(data, f)

    if os.name != "nt":
        os.chmod(config_file, 0o600)

    logger.info("Saved tunnel config to %s", config_file)
    return config_file


__all__ = [
    "DEFAULT_JAVA_PATH",
    "DEFAULT_READY_TOKEN",
    "DEFAULT_STARTUP_TIMEOUT_MS",
    "DEFAULT_TUNNEL_BIN_PATH",
    "DEFAULT_TUNNEL_BIN_URL",
    "ENV_VARS",
    "TunnelConfig",
    "apply_overrides",
    "get_config_file",
    "get_config_home",
    "load_config",
    "load_file_config",
    "save_config",
]

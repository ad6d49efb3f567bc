"""Exception hierarchy for the tunnel controller.

Every failure the controller can report derives from ``TunnelError`` so
callers (and the CLI) can catch one type. Subclasses name the pipeline
stage that failed:

    - ConfigurationError: required settings missing or invalid
    - FetchError: tunnel binary could not be downloaded
    - SpawnError: tunnel process could not be started
    - TunnelTimeoutError: tunnel never reported a connection
"""

from __future__ import annotations


class TunnelError(Exception):
    """Base exception for tunnel controller errors."""

    pass


class ConfigurationError(TunnelError):
    """Raised when required configuration is missing or invalid.

    Always raised before any network or process activity.
    """

    pass


class FetchError(TunnelError):
    """Raised when the tunnel binary cannot be fetched to its local path."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class SpawnError(TunnelError):
    """Raised when the tunnel process cannot be created."""

    pass


class TunnelTimeoutError(TunnelError):
    """Raised when no readiness line is seen before the startup deadline."""

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(
            f"Timed out waiting for tunnel to connect after {timeout_ms}ms"
        )
        self.timeout_ms = timeout_ms


__all__ = [
    "TunnelError",
    "ConfigurationError",
    "FetchError",
    "SpawnError",
    "TunnelTimeoutError",
]

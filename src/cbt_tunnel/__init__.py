"""Download, launch and supervise the CrossBrowserTesting tunnel.

Usage:
    from cbt_tunnel import Tunnel

    with Tunnel(api_key="...").open() as tunnel_proc:
        ...  # tests run through the tunnel; it is killed on exit
"""

from cbt_tunnel.config import TunnelConfig, load_config
from cbt_tunnel.errors import (
    ConfigurationError,
    FetchError,
    SpawnError,
    TunnelError,
    TunnelTimeoutError,
)
from cbt_tunnel.fetch import BinaryArtifact, FetchRequest, ensure_local
from cbt_tunnel.supervisor import ProcessHandle, ProcessSupervisor, SupervisorState
from cbt_tunnel.tunnel import Tunnel, run_tunnel

__version__ = "0.2.0"

__all__ = [
    "__version__",
    # Controller
    "Tunnel",
    "run_tunnel",
    # Components
    "BinaryArtifact",
    "FetchRequest",
    "ensure_local",
    "ProcessHandle",
    "ProcessSupervisor",
    "SupervisorState",
    # Configuration
    "TunnelConfig",
    "load_config",
    # Exceptions
    "TunnelError",
    "ConfigurationError",
    "FetchError",
    "SpawnError",
    "TunnelTimeoutError",
]

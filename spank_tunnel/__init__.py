"""
Spank Tunnel - SSH port forwarding between a job's submit host and its nodes.

This package provides:
- Allocated-node resolution and forward-list parsing
- Helper launching with a bounded one-line handshake
- A per-step registry for deterministic teardown
- Lifecycle hooks for submit-side, remote-side and step-exit events
"""

from spank_tunnel.config import load_config, load_plugin_config, SshOverride, TunnelConfig
from spank_tunnel.orchestrator import TunnelPlugin
from spank_tunnel.types import ForwardMode, ForwardRequest, JobRef, TunnelHandle, TunnelState

__version__ = "0.1.0"

__all__ = [
    "load_config",
    "load_plugin_config",
    "SshOverride",
    "TunnelConfig",
    "TunnelPlugin",
    "ForwardMode",
    "ForwardRequest",
    "JobRef",
    "TunnelHandle",
    "TunnelState",
    "__version__",
]

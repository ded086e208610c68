"""SSH tunnel management."""

from spank_tunnel.tunnel.command import build_helper_invocation, build_remove_invocation
from spank_tunnel.tunnel.forwards import parse_forwards
from spank_tunnel.tunnel.launcher import TunnelLauncher
from spank_tunnel.tunnel.registry import TunnelRegistry, run_remove_command

__all__ = [
    "TunnelLauncher",
    "TunnelRegistry",
    "build_helper_invocation",
    "build_remove_invocation",
    "parse_forwards",
    "run_remove_command",
]

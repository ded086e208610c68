"""Lifecycle hooks and option handling."""

from spank_tunnel.orchestrator.hooks import HookPhase, TunnelPlugin
from spank_tunnel.orchestrator.options import TunnelOption, mode_from_env, parse_tunnel_option

__all__ = [
    "HookPhase",
    "TunnelOption",
    "TunnelPlugin",
    "mode_from_env",
    "parse_tunnel_option",
]

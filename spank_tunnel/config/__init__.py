"""Configuration system for spank-tunnel."""

from spank_tunnel.config.schema import SshOverride, TunnelConfig
from spank_tunnel.config.loader import load_config, load_config_or_default, load_plugin_config

__all__ = [
    "SshOverride",
    "TunnelConfig",
    "load_config",
    "load_config_or_default",
    "load_plugin_config",
]

"""YAML configuration loader."""

import os
from pathlib import Path
from typing import Optional, Sequence, Union

import yaml

from spank_tunnel.config.schema import SshOverride, TunnelConfig


def load_config(path: Optional[Union[str, Path]] = None) -> TunnelConfig:
    """Load configuration from YAML file.

    Args:
        path: Path to config file. If None, checks SPANK_TUNNEL_CONFIG env var,
              then falls back to ./spank_tunnel.yaml

    Returns:
        Parsed TunnelConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is invalid YAML
        pydantic.ValidationError: If config doesn't match schema
    """
    if path is None:
        path = os.environ.get("SPANK_TUNNEL_CONFIG", "spank_tunnel.yaml")

    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}

    return TunnelConfig.model_validate(data)


def load_config_or_default(path: Optional[Union[str, Path]] = None) -> TunnelConfig:
    """Load configuration, returning defaults if file doesn't exist."""
    try:
        return load_config(path)
    except FileNotFoundError:
        return TunnelConfig()


def load_plugin_config(
    plugin_args: Sequence[str],
    path: Optional[Union[str, Path]] = None,
) -> TunnelConfig:
    """Build the plugin configuration once at load time.

    Plugin argument tokens (ssh_cmd=, ssh_args=, helpertask_args=) take
    precedence over the YAML file.
    """
    config = load_config_or_default(path)
    ssh = SshOverride.from_plugin_args(plugin_args, base=config.ssh)
    return config.model_copy(update={"ssh": ssh})

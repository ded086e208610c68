"""Pydantic configuration schemas for spank-tunnel."""

from typing import Iterable, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

# Plugin argument tokens and the SshOverride field each one sets
PLUGIN_TOKENS = {
    "ssh_cmd=": "cmd",
    "ssh_args=": "args",
    "helpertask_args=": "helper_args",
}


class SshOverride(BaseModel):
    """SSH parameters used for every tunnel of this process.

    Built once at plugin load and shared read-only afterwards.
    """
    model_config = ConfigDict(frozen=True)

    cmd: str = Field(default="ssh", description="SSH client command")
    args: str = Field(default="", description="Extra arguments passed to the SSH client")
    helper_args: str = Field(default="", description="Trailing arguments for the helper task")

    @classmethod
    def from_plugin_args(cls, tokens: Iterable[str], base: Optional["SshOverride"] = None) -> "SshOverride":
        """Read ssh_cmd=, ssh_args= and helpertask_args= tokens.

        A '|' inside a token value stands for a space.
        """
        values = base.model_dump() if base is not None else {}
        for token in tokens:
            for prefix, name in PLUGIN_TOKENS.items():
                if token.startswith(prefix):
                    values[name] = token[len(prefix):].replace("|", " ")
        return cls(**values)


class TunnelConfig(BaseModel):
    """Root configuration for spank-tunnel."""
    model_config = ConfigDict(frozen=True)

    helper: list[str] = Field(
        default_factory=lambda: ["spank-tunnel-helper"],
        description="Command prefix used to run the tunnel helper",
    )
    handshake_timeout: float = Field(default=5.0, gt=0, description="Seconds to wait for a helper handshake")
    removal_timeout: float = Field(default=5.0, gt=0, description="Seconds to wait for a remove command")
    default_mode: Literal["first", "last", "all", "batch", "none"] = Field(
        default="first",
        description="Forward mode used when --tunnel is given without a value",
    )
    mode_env_var: str = Field(default="SLURM_STUNNEL", description="Env var carrying the forward mode to remote steps")
    forward_env_var: str = Field(default="SLURM_STUNNEL_FORWARD", description="Env var carrying negotiated forwards")
    state_dir: str = Field(default="/tmp/spank_tunnel", description="Helper side-channel directory")
    ssh: SshOverride = Field(default_factory=SshOverride, description="SSH overrides")

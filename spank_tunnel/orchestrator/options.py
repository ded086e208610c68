"""The user-facing --tunnel option."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from spank_tunnel.exceptions import ForwardSpecError, OptionError
from spank_tunnel.tunnel.forwards import format_forwards, parse_forwards
from spank_tunnel.types import ForwardMode, ForwardRequest

OPTION_NAME = "tunnel"
OPTION_USAGE = "<first|last|all|batch|submit port:exec port[,submit port:exec port,...]>"
OPTION_HELP = "Forward exec host port to submit host port via ssh -L"

MODE_KEYWORDS = {
    "first": ForwardMode.FIRST,
    "last": ForwardMode.LAST,
    "all": ForwardMode.ALL,
    "batch": ForwardMode.BATCH,
}


@dataclass(frozen=True)
class TunnelOption:
    """Parsed value of --tunnel."""
    mode: ForwardMode
    forwards: tuple[ForwardRequest, ...] = ()

    @property
    def spec(self) -> str:
        return format_forwards(list(self.forwards))


def parse_tunnel_option(value: Optional[str], default_mode: str = "first") -> TunnelOption:
    """Parse a --tunnel value.

    No value selects the default mode, a mode keyword selects that mode, and
    anything else must be a forward list (tunnelled to the first node).

    Raises:
        OptionError: If the value is neither a mode keyword nor a valid forward list
    """
    if value is None or not value.strip():
        return TunnelOption(ForwardMode(default_mode))

    value = value.strip()
    if value in MODE_KEYWORDS:
        return TunnelOption(MODE_KEYWORDS[value])

    try:
        forwards = parse_forwards(value)
    except ForwardSpecError as e:
        raise OptionError(f"Bad value for --{OPTION_NAME}: {value} ({e})") from e
    return TunnelOption(ForwardMode.FIRST, tuple(forwards))


def mode_from_env(env: Mapping[str, str], name: str) -> ForwardMode:
    """Read the forward mode persisted for remote steps.

    An absent or unknown token means no forwarding.
    """
    token = env.get(name, "").strip()
    return MODE_KEYWORDS.get(token, ForwardMode.NONE)

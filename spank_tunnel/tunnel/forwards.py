"""Parsing of submitPort:execPort forward lists."""

from __future__ import annotations

import re

from spank_tunnel.exceptions import MalformedForwardSpec, PortOutOfRange
from spank_tunnel.types import ForwardRequest

_PAIR = re.compile(r"^(\d+):(\d+)$")

MAX_PORT = 65535


def check_port(port: int) -> int:
    if port < 1 or port > MAX_PORT:
        raise PortOutOfRange(f"Port {port} is outside 1-{MAX_PORT}")
    return port


def parse_forwards(spec: str) -> list[ForwardRequest]:
    """Parse '10000:2222,10001:2223' into ForwardRequests, in input order.

    An empty string means no forwards were requested. Duplicate submit ports
    are accepted as given.

    Raises:
        MalformedForwardSpec: If an entry is not digits:digits
        PortOutOfRange: If a port is 0 or above 65535
    """
    if not spec or not spec.strip():
        return []

    forwards = []
    for entry in spec.split(","):
        m = _PAIR.match(entry.strip())
        if not m:
            raise MalformedForwardSpec(f"Bad forward {entry!r}, expected submitPort:execPort")
        submit_port = check_port(int(m.group(1)))
        exec_port = check_port(int(m.group(2)))
        forwards.append(ForwardRequest(submit_port, exec_port))
    return forwards


def format_forwards(forwards: list[ForwardRequest]) -> str:
    return ",".join(str(f) for f in forwards)

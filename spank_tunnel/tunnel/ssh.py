"""SSH command lines and port bookkeeping for the tunnel helper."""

from __future__ import annotations

import errno
import logging
import os
import shlex
import signal
import socket
from typing import Optional, Sequence

logger = logging.getLogger("spank_tunnel.ssh")

SSH_OPTIONS = [
    "-o", "ExitOnForwardFailure=yes",
    "-o", "ServerAliveInterval=30",
    "-o", "ServerAliveCountMax=3",
    "-o", "TCPKeepAlive=yes",
    "-o", "BatchMode=yes",
]

# How far above a busy port to look for a free one
PORT_SEARCH_SPAN = 100


def port_is_free(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as e:
            if e.errno in (errno.EADDRINUSE, errno.EACCES):
                return False
            raise
    return True


def pick_bound_port(requested: Optional[int] = None, host: str = "127.0.0.1") -> int:
    """Return the requested port, the next free one above it, or an ephemeral port."""
    if requested is None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            return sock.getsockname()[1]

    for port in range(requested, min(requested + PORT_SEARCH_SPAN, 65536)):
        if port_is_free(port, host):
            return port
    raise OSError(errno.EADDRINUSE, f"no free port in {requested}-{requested + PORT_SEARCH_SPAN - 1}")


def build_ssh_argv(
    ssh_cmd: str,
    ssh_args: str,
    node: str,
    bound_port: int,
    target_port: int,
    reverse: bool = False,
    user: Optional[str] = None,
    remote_cmd: Sequence[str] = (),
) -> list[str]:
    """Build the SSH command that carries one forward.

    Local forwarding binds `bound_port` here and reaches `target_port` on the
    node; reverse forwarding binds `bound_port` on the node and reaches
    `target_port` here.
    """
    flag = "-R" if reverse else "-L"
    dest = f"{user}@{node}" if user else node
    argv = [
        *shlex.split(ssh_cmd),
        *SSH_OPTIONS,
        *shlex.split(ssh_args),
        flag, f"{bound_port}:localhost:{target_port}",
    ]
    if not remote_cmd:
        argv.append("-N")
    argv.append(dest)
    argv.extend(remote_cmd)
    return argv


def kill_tunnel(pid: int) -> bool:
    """Send SIGTERM to a recorded ssh process.

    Returns False if the process no longer exists.
    """
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    logger.info("Killed tunnel pid %d", pid)
    return True

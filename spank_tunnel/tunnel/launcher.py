"""Spawning tunnel helpers and reading their handshake line."""

from __future__ import annotations

import logging
import os
import selectors
import shlex
import subprocess
import time
from typing import Optional, Sequence

from spank_tunnel.exceptions import HandshakeFailed, HandshakeTimeout, SpawnFailed, TunnelError
from spank_tunnel.tunnel.forwards import MAX_PORT
from spank_tunnel.types import JobRef, TunnelHandle, TunnelState

logger = logging.getLogger("spank_tunnel.launcher")

# Upper bound on the handshake line, newline included
HANDSHAKE_LIMIT = 256


def read_handshake(proc: subprocess.Popen, timeout: float, limit: int = HANDSHAKE_LIMIT) -> str:
    """Read one line from the helper's stdout, waiting at most `timeout` seconds.

    Raises:
        HandshakeTimeout: If no complete line arrived in time
        HandshakeFailed: If stdout closed before any data
    """
    fd = proc.stdout.fileno()
    deadline = time.monotonic() + timeout
    buf = b""
    with selectors.DefaultSelector() as sel:
        sel.register(fd, selectors.EVENT_READ)
        while b"\n" not in buf and len(buf) < limit:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HandshakeTimeout(f"no handshake from pid {proc.pid} after {timeout:g}s")
            if not sel.select(remaining):
                continue
            chunk = os.read(fd, limit - len(buf))
            if not chunk:
                break
            buf += chunk

    if not buf:
        raise HandshakeFailed(f"pid {proc.pid} closed stdout without a handshake")
    line = buf.split(b"\n", 1)[0]
    return line.decode("utf-8", errors="replace").strip()


def parse_handshake(token: str, expect_port: bool) -> Optional[int]:
    """Return the port announced by a handshake token, if any."""
    if not token:
        raise HandshakeFailed("empty handshake line")
    if token.isdigit() and 1 <= int(token) <= MAX_PORT:
        return int(token)
    if expect_port:
        raise HandshakeFailed(f"handshake {token!r} is not a port number")
    return None


class TunnelLauncher:
    """Start helper processes without blocking longer than a timeout.

    Persistent helpers (the SSH forward itself) keep running after the
    handshake and are tracked through the returned handle; one-shot helpers
    exit after printing and are reaped here.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def spawn(self, argv: Sequence[str]) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnFailed(f"unable to exec {argv[0]}: {e}") from e

    def launch(
        self,
        argv: Sequence[str],
        node: str,
        job_ref: JobRef,
        timeout: Optional[float] = None,
        expect_port: bool = True,
    ) -> TunnelHandle:
        """Launch a helper and wait for its handshake.

        Never raises for tunnel errors: the returned handle is ACTIVE on
        success and FAILED (with `error` set) otherwise. After a timeout
        the still-running process stays on the handle so it can be reaped.
        """
        timeout = self.timeout if timeout is None else timeout
        handle = TunnelHandle(node=node, job_ref=job_ref)
        logger.debug("tunnel: executing %s", shlex.join(argv))

        try:
            handle.process = self.spawn(argv)
            token = read_handshake(handle.process, timeout)
            handle.bound_port = parse_handshake(token, expect_port)
            handle.token = token
        except HandshakeTimeout as e:
            logger.error("tunnel: unable to connect node %s for %s: %s", node, job_ref, e)
            return handle.fail(e)
        except TunnelError as e:
            logger.error("tunnel: unable to connect node %s for %s: %s", node, job_ref, e)
            handle.fail(e)
            if handle.process is not None:
                handle.close()
                handle.state = TunnelState.FAILED
            return handle

        handle.state = TunnelState.ACTIVE
        # One-shot helpers are done once they have printed
        handle.process.poll()
        logger.info("tunnel: forward is %s on node %s (pid %s)", token, node, handle.pid)
        return handle

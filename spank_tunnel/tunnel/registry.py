"""Process-wide table of active tunnels, keyed by job step."""

from __future__ import annotations

import logging
import subprocess
import threading
from collections import defaultdict
from typing import Callable, Optional

from spank_tunnel.exceptions import TeardownPartialFailure
from spank_tunnel.types import JobRef, TunnelHandle

logger = logging.getLogger("spank_tunnel.registry")

Remover = Callable[[TunnelHandle], None]


def run_remove_command(argv: list[str], timeout: float) -> None:
    """Run a helper remove command and check that it succeeded.

    Raises:
        TeardownPartialFailure: If the command fails, times out or cannot run
    """
    try:
        result = subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise TeardownPartialFailure(f"unable to exec remove cmd {argv[0]}: {e}") from e
    if result.returncode != 0:
        raise TeardownPartialFailure(f"remove cmd exited with status {result.returncode}")


class TunnelRegistry:
    """Track tunnel handles per job step for later teardown.

    A single lock guards the table; removal commands run outside it so one
    slow step cannot stall the others.
    """

    def __init__(self):
        self._tunnels: dict[JobRef, list[TunnelHandle]] = defaultdict(list)
        self._lock = threading.Lock()

    def register(self, job_ref: JobRef, handle: TunnelHandle) -> None:
        with self._lock:
            self._tunnels[job_ref].append(handle)

    def lookup(self, job_ref: JobRef) -> list[TunnelHandle]:
        with self._lock:
            return list(self._tunnels.get(job_ref, ()))

    def job_refs(self) -> list[JobRef]:
        with self._lock:
            return list(self._tunnels)

    def teardown(self, job_ref: JobRef, remover: Optional[Remover] = None) -> int:
        """Close every tunnel of a job step and drop its entry.

        The entry is removed unconditionally. Removal failures are logged,
        never raised.

        Returns:
            Number of tunnels closed
        """
        with self._lock:
            handles = self._tunnels.pop(job_ref, [])

        closed = 0
        for handle in handles:
            if remover is not None:
                try:
                    remover(handle)
                except TeardownPartialFailure as e:
                    logger.error("tunnel: removal for %s on %s not confirmed: %s", job_ref, handle.node, e)
            try:
                handle.close()
            except OSError as e:
                logger.error("tunnel: unable to stop pid %s for %s: %s", handle.pid, job_ref, e)
                continue
            closed += 1

        if handles:
            logger.info("tunnel: closed %d/%d tunnel(s) for %s", closed, len(handles), job_ref)
        return closed

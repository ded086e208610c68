"""Core data types shared by the tunnel components."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from spank_tunnel.exceptions import TunnelError

# Step id the scheduler assigns to the batch script of a job
BATCH_STEP_ID = 0xFFFFFFFB


class ForwardMode(str, Enum):
    """Which allocated node(s) receive a tunnel."""
    FIRST = "first"
    LAST = "last"
    ALL = "all"
    BATCH = "batch"
    NONE = "none"


class Direction(str, Enum):
    """Forwarding direction relative to the submission host."""
    TO_EXEC = "to_exec"      # ssh -L: submit port reaches exec port
    TO_SUBMIT = "to_submit"  # ssh -R: exec port reaches submit port


class HelperOp(str, Enum):
    """Operation mode flags understood by the tunnel helper."""
    CONNECT = "connect"
    GREET = "greet"
    REMOVE = "remove"


class TunnelState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class JobRef:
    """One job step, as reported by the scheduler."""
    job_id: int
    step_id: int

    def __str__(self) -> str:
        return f"{self.job_id}.{self.step_id}"

    @property
    def is_batch(self) -> bool:
        return self.step_id == BATCH_STEP_ID


@dataclass(frozen=True)
class ForwardRequest:
    """A single submitPort:execPort pair."""
    submit_port: int
    exec_port: int

    def __str__(self) -> str:
        return f"{self.submit_port}:{self.exec_port}"


@dataclass
class TunnelHandle:
    """A launched helper process and what its handshake reported."""
    node: str
    job_ref: JobRef
    process: Optional[subprocess.Popen] = None
    bound_port: Optional[int] = None
    token: Optional[str] = None
    state: TunnelState = TunnelState.STARTING
    error: Optional["TunnelError"] = field(default=None, repr=False)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def fail(self, error: "TunnelError") -> "TunnelHandle":
        self.state = TunnelState.FAILED
        self.error = error
        return self

    def close(self, timeout: float = 2.0) -> None:
        """Terminate the helper if it is still running and reap it."""
        proc = self.process
        if proc is not None:
            if proc.poll() is None:
                proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            if proc.stdout is not None:
                proc.stdout.close()
        self.state = TunnelState.CLOSED

"""Argument vectors for the tunnel helper.

Every value is a discrete argv element and the helper is executed directly,
never through a shell, so node names, user names and SSH overrides cannot
inject shell syntax.
"""

from __future__ import annotations

import shlex
from typing import Optional, Sequence

from spank_tunnel.config import SshOverride
from spank_tunnel.types import Direction, ForwardRequest, HelperOp, JobRef

_OP_FLAGS = {
    HelperOp.CONNECT: "-c",
    HelperOp.GREET: "-g",
    HelperOp.REMOVE: "-r",
}


def build_helper_invocation(
    helper: Sequence[str],
    node: Optional[str],
    job_ref: JobRef,
    forward: Optional[ForwardRequest],
    ssh: SshOverride,
    direction: Direction = Direction.TO_EXEC,
    wait_for_greeting: bool = False,
    op: HelperOp = HelperOp.CONNECT,
    user: Optional[str] = None,
    state_dir: Optional[str] = None,
    timeout: Optional[float] = None,
) -> list[str]:
    """Build the argument vector for one helper invocation.

    Args:
        helper: Command prefix of the helper program
        node: Target node (required for connect)
        job_ref: Job step the tunnel belongs to
        forward: Port pair, or None for a generic tunnel
        ssh: SSH overrides from the plugin configuration
        direction: TO_EXEC uses local forwarding, TO_SUBMIT remote forwarding
        wait_for_greeting: Ask the helper to wait for the recorded value
        op: Helper operation; exactly one is emitted
        user: Remote user name for the SSH connection
        state_dir: Helper side-channel directory
        timeout: Seconds the helper may wait for a greeting

    Returns:
        List of arguments, helper command first
    """
    op = HelperOp(op)
    if op == HelperOp.REMOVE and wait_for_greeting:
        raise ValueError("remove cannot be combined with wait")
    if op == HelperOp.CONNECT and not node:
        raise ValueError("connect requires a target node")

    argv = [*helper, "-i", str(job_ref), _OP_FLAGS[op]]
    if wait_for_greeting:
        argv.append("-w")
    if state_dir:
        argv += ["--state-dir", state_dir]

    if op == HelperOp.REMOVE:
        return argv

    if timeout is not None:
        argv += ["--timeout", f"{timeout:g}"]
    if op == HelperOp.GREET:
        return argv

    argv += ["-t", node]
    if user:
        argv += ["-u", user]
    # name=value form keeps values that start with '-' attached to their flag
    argv += [f"--ssh-cmd={ssh.cmd}", f"--ssh-args={ssh.args}"]
    if forward is not None:
        flag = "-L" if Direction(direction) == Direction.TO_EXEC else "-R"
        argv += [flag, str(forward)]
    elif Direction(direction) == Direction.TO_SUBMIT:
        argv.append("--reverse")

    task_args = shlex.split(ssh.helper_args)
    if task_args:
        argv += ["--", *task_args]
    return argv


def build_remove_invocation(
    helper: Sequence[str],
    job_ref: JobRef,
    state_dir: Optional[str] = None,
) -> list[str]:
    """Build the companion remove command for a job step."""
    return build_helper_invocation(
        helper, None, job_ref, None, SshOverride(),
        op=HelperOp.REMOVE, state_dir=state_dir,
    )

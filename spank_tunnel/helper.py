"""Tunnel helper program.

Speaks the one-line handshake protocol used by the plugin hooks:

  -c  connect: start the SSH forward, print the bound port, keep running
  -g  greet:   print the value recorded for a job step, then exit
  -w  wait:    with -c/-g, wait for the recorded value to appear
  -r  remove:  stop every forward recorded for a job step, then exit

State for a job step lives under <state-dir>/<job>.<step>/: a `forward`
file holding the negotiated value and one `<pid>.pid` file per SSH process.

A connect runs this program with --hold on the far node as the SSH remote
command. Trailing task arguments (after `--`) travel with it and are started
there as a task that lives as long as the forward.
"""

from __future__ import annotations

import argparse
import logging
import shlex
import shutil
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional

from spank_tunnel.tunnel.forwards import MalformedForwardSpec, PortOutOfRange, parse_forwards
from spank_tunnel.tunnel.ssh import build_ssh_argv, kill_tunnel, pick_bound_port

logger = logging.getLogger("spank_tunnel.helper")

REMOTE_HELPER = "spank-tunnel-helper"
POLL_INTERVAL = 0.1


class StepState:
    """Side-channel files of one job step."""

    def __init__(self, state_dir: str, step: str):
        self.root = Path(state_dir) / step

    @property
    def forward_file(self) -> Path:
        return self.root / "forward"

    def record_forward(self, value: str) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = self.root / "forward.tmp"
        tmp.write_text(value + "\n")
        tmp.replace(self.forward_file)

    def read_forward(self) -> Optional[str]:
        try:
            value = self.forward_file.read_text().strip()
        except FileNotFoundError:
            return None
        return value or None

    def record_pid(self, pid: int) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f"{pid}.pid"
        path.write_text(str(pid))
        return path

    def pids(self) -> list[int]:
        if not self.root.is_dir():
            return []
        pids = []
        for path in sorted(self.root.glob("*.pid")):
            try:
                pids.append(int(path.read_text().strip()))
            except (ValueError, OSError):
                logger.warning("Ignoring unreadable pid file %s", path)
        return pids

    def clear(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)


def wait_for_forward(state: StepState, timeout: float) -> Optional[str]:
    deadline = time.monotonic() + timeout
    value = state.read_forward()
    while value is None and time.monotonic() < deadline:
        time.sleep(POLL_INTERVAL)
        value = state.read_forward()
    return value


def wait_for_listener(port: int, proc: subprocess.Popen, timeout: float) -> bool:
    """Wait until something accepts connections on a local port.

    Returns False if the SSH process exits or the timeout expires first.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            return False
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=POLL_INTERVAL):
                return True
        except OSError:
            time.sleep(POLL_INTERVAL)
    return False


def _terminate_on_signal(proc: subprocess.Popen) -> None:
    def handler(signum, frame):
        if proc.poll() is None:
            proc.terminate()
        raise SystemExit(128 + signum)

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGHUP, handler)


def do_connect(args: argparse.Namespace, state: StepState) -> int:
    pair = args.local or args.remote
    reverse = bool(args.remote) or args.reverse
    if pair:
        forward = parse_forwards(pair)[0]
        requested, target = forward.submit_port, forward.exec_port
    else:
        requested, target = None, None

    if reverse:
        # The listening side is the remote node, it cannot be probed from here
        bound = requested if requested is not None else pick_bound_port()
    else:
        bound = pick_bound_port(requested)
    if target is None:
        target = bound

    remote_cmd = [
        args.remote_helper, "-i", args.step, "--hold", str(bound),
        "--state-dir", args.state_dir, "--", *args.task_args,
    ]
    # ssh hands the remote command to the node's shell as a single string
    argv = build_ssh_argv(
        args.ssh_cmd, args.ssh_args, args.node, bound, target,
        reverse=reverse, user=args.user, remote_cmd=[shlex.join(remote_cmd)],
    )
    logger.debug("Opening tunnel: %s", shlex.join(argv))

    proc = subprocess.Popen(argv, stdin=subprocess.PIPE, stdout=subprocess.DEVNULL)
    pid_file = state.record_pid(proc.pid)
    _terminate_on_signal(proc)

    try:
        if args.wait:
            if reverse:
                time.sleep(min(args.timeout, 1.0))
                ready = proc.poll() is None
            else:
                ready = wait_for_listener(bound, proc, args.timeout)
            if not ready:
                logger.error("Forward to %s did not come up", args.node)
                if proc.poll() is None:
                    proc.terminate()
                proc.wait()
                return 3

        state.record_forward(str(bound))
        print(bound, flush=True)
        sys.stdout.close()
        return proc.wait()
    finally:
        pid_file.unlink(missing_ok=True)


def do_greet(args: argparse.Namespace, state: StepState) -> int:
    if args.wait:
        value = wait_for_forward(state, args.timeout)
    else:
        value = state.read_forward()
    if value is None:
        logger.error("No forward recorded for %s", args.step)
        return 1
    print(value, flush=True)
    return 0


def do_remove(args: argparse.Namespace, state: StepState) -> int:
    for pid in state.pids():
        kill_tunnel(pid)
    state.clear()
    return 0


def start_task(task_args: list[str]) -> Optional[subprocess.Popen]:
    """Start the trailing task next to the held forward.

    A task that cannot be started is logged; the forward stays up.
    """
    if not task_args:
        return None
    try:
        return subprocess.Popen(task_args, stdin=subprocess.DEVNULL)
    except OSError as e:
        logger.error("Unable to start task %s: %s", shlex.join(task_args), e)
        return None


def do_hold(args: argparse.Namespace, state: StepState) -> int:
    """Record the forward on this node until the SSH session ends."""
    state.record_forward(args.hold)

    def handler(signum, frame):
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGHUP, handler)
    task = start_task(args.task_args)
    try:
        # stdin reaches EOF when the SSH session closes
        sys.stdin.read()
    finally:
        if task is not None and task.poll() is None:
            task.terminate()
            try:
                task.wait(timeout=5)
            except subprocess.TimeoutExpired:
                task.kill()
                task.wait()
        state.clear()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spank-tunnel-helper",
        description="Set up, announce and remove SSH port forwards for a job step",
    )
    parser.add_argument("-i", dest="step", required=True, help="Job step as JOBID.STEPID")

    ops = parser.add_mutually_exclusive_group(required=True)
    ops.add_argument("-c", dest="connect", action="store_true", help="Establish the forward")
    ops.add_argument("-g", dest="greet", action="store_true", help="Print the recorded forward")
    ops.add_argument("-r", dest="remove", action="store_true", help="Remove the job step's forwards")
    ops.add_argument("--hold", metavar="VALUE", help=argparse.SUPPRESS)

    parser.add_argument("-w", dest="wait", action="store_true", help="Wait for the recorded forward")
    parser.add_argument("-t", dest="node", help="Target node")
    parser.add_argument("-u", dest="user", help="Remote user name")
    parser.add_argument("-s", "--ssh-cmd", dest="ssh_cmd", default="ssh", help="SSH command")
    parser.add_argument("-o", "--ssh-args", dest="ssh_args", default="", help="Extra SSH arguments")
    direction = parser.add_mutually_exclusive_group()
    direction.add_argument("-L", dest="local", metavar="SUBMIT:EXEC", help="Local forward")
    direction.add_argument("-R", dest="remote", metavar="SUBMIT:EXEC", help="Remote forward")
    direction.add_argument("--reverse", action="store_true", help="Generic remote forward")
    parser.add_argument("--state-dir", default="/tmp/spank_tunnel", help="Side-channel directory")
    parser.add_argument("--timeout", type=float, default=5.0, help="Seconds to wait with -w")
    parser.add_argument("--remote-helper", default=REMOTE_HELPER, help="Helper command on the node")
    parser.add_argument("task_args", nargs="*", help="Trailing helper task arguments")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.remove and args.wait:
        parser.error("-r cannot be combined with -w")
    if args.connect and not args.node:
        parser.error("-c requires -t NODE")

    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    state = StepState(args.state_dir, args.step)

    if args.remove:
        return do_remove(args, state)
    if args.hold is not None:
        return do_hold(args, state)

    if args.connect:
        try:
            return do_connect(args, state)
        except (MalformedForwardSpec, PortOutOfRange, OSError) as e:
            logger.error("Unable to connect %s: %s", args.node, e)
            return 2
    return do_greet(args, state)


if __name__ == "__main__":
    sys.exit(main())

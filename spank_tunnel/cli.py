"""Command-line interface for spank-tunnel."""

from __future__ import annotations

import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Literal, Optional

import tyro

from spank_tunnel.cluster import SlurmJobQuery, resolve_targets
from spank_tunnel.config import load_plugin_config
from spank_tunnel.exceptions import OptionError, TeardownPartialFailure, TunnelError
from spank_tunnel.orchestrator import TunnelPlugin, parse_tunnel_option
from spank_tunnel.types import ForwardMode, JobRef

logger = logging.getLogger("spank_tunnel.cli")


@dataclass
class ParseOptionArgs:
    """Check a --tunnel value the way job submission does."""
    value: str = ""
    """Option value: first|last|all|batch or submitPort:execPort[,...]"""
    verbose: bool = False
    """Enable debug logging"""


@dataclass
class ResolveArgs:
    """Show which nodes of a host expression would be tunnelled to."""
    expr: str
    """Compact host-range expression, e.g. node[01-04]"""
    mode: Literal["first", "last", "all", "none"] = "all"
    """Forward mode"""
    verbose: bool = False
    """Enable debug logging"""


@dataclass
class SetupArgs:
    """Open tunnels for a running job step and hold them until interrupted."""
    job_id: int
    """Job id"""
    step_id: int = 0
    """Step id"""
    tunnel: Optional[str] = None
    """--tunnel value (default: first node, generic tunnel)"""
    config: Optional[str] = None
    """Path to config file"""
    plugin_args: tuple[str, ...] = ()
    """Plugin tokens: ssh_cmd=..., ssh_args=..., helpertask_args=..."""
    background: bool = False
    """Wait for SIGINT/SIGTERM instead of Enter"""
    verbose: bool = False
    """Enable debug logging"""


@dataclass
class TeardownArgs:
    """Remove the forwards recorded for a job step."""
    job_id: int
    """Job id"""
    step_id: int = 0
    """Step id"""
    config: Optional[str] = None
    """Path to config file"""
    plugin_args: tuple[str, ...] = ()
    """Plugin tokens: ssh_cmd=..., ssh_args=..., helpertask_args=..."""
    verbose: bool = False
    """Enable debug logging"""


def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def cmd_parse_option(args: ParseOptionArgs) -> int:
    """Execute parse-option command."""
    try:
        option = parse_tunnel_option(args.value or None)
    except OptionError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(f"mode: {option.mode.value}")
    if option.forwards:
        print(f"forwards: {option.spec}")
    for forward in option.forwards:
        print(f"  forward: submit {forward.submit_port} -> exec {forward.exec_port}")
    return 0


def cmd_resolve(args: ResolveArgs) -> int:
    """Execute resolve command."""
    try:
        nodes = resolve_targets(args.expr, ForwardMode(args.mode))
    except TunnelError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    for node in nodes:
        print(node)
    return 0


def _job_plugin(job_id: int, step_id: int, config: Optional[str], plugin_args) -> TunnelPlugin:
    job_query = SlurmJobQuery({"SLURM_JOB_ID": str(job_id), "SLURM_STEP_ID": str(step_id)})
    return TunnelPlugin(load_plugin_config(plugin_args, config), job_query)


def _wait_for_signal(background: bool):
    """Wait for user input or signal depending on mode."""
    if background:
        print(f"Holding tunnels (PID: {os.getpid()}), stop with SIGTERM")
        event = signal.sigwait([signal.SIGINT, signal.SIGTERM])
        print(f"\nReceived signal {event}, shutting down...")
    else:
        input("\nPress Enter to close.\n")


def cmd_setup(args: SetupArgs) -> int:
    """Execute setup command."""
    plugin = _job_plugin(args.job_id, args.step_id, args.config, args.plugin_args)
    if plugin.process_option(args.tunnel) != 0:
        return 1

    env = dict(os.environ)
    status = plugin.local_user_init(env)
    job_ref = JobRef(args.job_id, args.step_id)
    handles = plugin.registry.lookup(job_ref)
    if status != 0 or not handles:
        print(f"No tunnels opened for {job_ref}", file=sys.stderr)
        return 1

    print(f"Tunnels for {job_ref}:")
    for handle in handles:
        print(f"  {handle.node}: {handle.token or '-'} ({handle.state.value}, pid {handle.pid})")

    if args.background:
        signal.pthread_sigmask(signal.SIG_BLOCK, [signal.SIGINT, signal.SIGTERM])
    try:
        _wait_for_signal(args.background)
    except (KeyboardInterrupt, EOFError):
        pass
    finally:
        plugin.exit(env=env)
    return 0


def cmd_teardown(args: TeardownArgs) -> int:
    """Execute teardown command."""
    plugin = _job_plugin(args.job_id, args.step_id, args.config, args.plugin_args)
    job_ref = JobRef(args.job_id, args.step_id)
    try:
        plugin.remove_step(job_ref)
    except TeardownPartialFailure as e:
        logger.error("Removal for %s not confirmed: %s", job_ref, e)
        return 1
    print(f"Removed forwards for {job_ref}")
    return 0


def main():
    """Main entry point for spank-tunnel CLI."""
    args = tyro.extras.subcommand_cli_from_dict(
        {
            "parse-option": ParseOptionArgs,
            "resolve": ResolveArgs,
            "setup": SetupArgs,
            "teardown": TeardownArgs,
        },
        description="SSH port forwarding for scheduler job steps",
    )
    setup_logging(args.verbose)

    if isinstance(args, ParseOptionArgs):
        status = cmd_parse_option(args)
    elif isinstance(args, ResolveArgs):
        status = cmd_resolve(args)
    elif isinstance(args, SetupArgs):
        status = cmd_setup(args)
    else:
        status = cmd_teardown(args)
    sys.exit(status)


if __name__ == "__main__":
    main()

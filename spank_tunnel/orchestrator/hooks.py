"""Lifecycle hooks that set up and tear down tunnels for a job step."""

from __future__ import annotations

import logging
import os
import pwd
import socket
from enum import Enum
from typing import MutableMapping, Optional, Sequence

from spank_tunnel.cluster import JobQuery, resolve_targets
from spank_tunnel.config import TunnelConfig, load_plugin_config
from spank_tunnel.exceptions import (
    EmptyNodeSet,
    ForwardSpecError,
    InvalidExpression,
    JobQueryFailed,
    OptionError,
    TeardownPartialFailure,
)
from spank_tunnel.orchestrator.options import TunnelOption, mode_from_env, parse_tunnel_option
from spank_tunnel.tunnel import (
    TunnelLauncher,
    TunnelRegistry,
    build_helper_invocation,
    build_remove_invocation,
    parse_forwards,
    run_remove_command,
)
from spank_tunnel.types import (
    Direction,
    ForwardMode,
    ForwardRequest,
    HelperOp,
    JobRef,
    TunnelHandle,
    TunnelState,
)

logger = logging.getLogger("spank_tunnel.hooks")

# Extra time the launcher grants a greeting helper on top of its own wait
GREETING_GRACE = 1.0


class HookPhase(str, Enum):
    INIT = "init"
    LOCAL_SETUP = "local_setup"
    REMOTE_SETUP = "remote_setup"
    ACTIVE = "active"


class TunnelPlugin:
    """Tunnel orchestration for the scheduler's plugin hooks.

    Handles:
    - Option processing (--tunnel)
    - Submit-side setup: one helper per forward on the selected node(s)
    - Remote-side setup: greeting or batch forwarding to the allocation node
    - Step exit: forced teardown of everything registered for the step

    Setup errors are logged and skip the affected tunnel; they never fail
    the job. Exit always reports success.
    """

    def __init__(
        self,
        config: TunnelConfig,
        job_query: JobQuery,
        launcher: Optional[TunnelLauncher] = None,
        registry: Optional[TunnelRegistry] = None,
    ):
        self.config = config
        self.job_query = job_query
        self.launcher = launcher or TunnelLauncher(config.handshake_timeout)
        self.registry = registry or TunnelRegistry()
        self.option: Optional[TunnelOption] = None
        # Steps leave the table when their exit hook runs
        self.phases: dict[JobRef, HookPhase] = {}

    @classmethod
    def from_plugin_args(
        cls,
        plugin_args: Sequence[str],
        job_query: JobQuery,
        config_path: Optional[str] = None,
        **kwargs,
    ) -> "TunnelPlugin":
        """Plugin init: read the SSH overrides once and build the plugin."""
        return cls(load_plugin_config(plugin_args, config_path), job_query, **kwargs)

    def process_option(self, value: Optional[str]) -> int:
        """Handle --tunnel[=value]. Returns 0, or -1 if the value is rejected."""
        try:
            self.option = parse_tunnel_option(value, self.config.default_mode)
        except OptionError as e:
            logger.error("%s", e)
            return -1
        return 0

    def _mode(self, env: MutableMapping[str, str]) -> ForwardMode:
        if self.option is not None:
            return self.option.mode
        return mode_from_env(env, self.config.mode_env_var)

    def _track(self, job_ref: JobRef, handle: TunnelHandle) -> bool:
        """Register a launched handle; failed ones only while still running."""
        if handle.state == TunnelState.ACTIVE or handle.alive:
            self.registry.register(job_ref, handle)
        return handle.state == TunnelState.ACTIVE

    def _connect_node(
        self,
        node: str,
        job_ref: JobRef,
        forward: Optional[ForwardRequest],
        direction: Direction = Direction.TO_EXEC,
        user: Optional[str] = None,
    ) -> TunnelHandle:
        argv = build_helper_invocation(
            self.config.helper,
            node,
            job_ref,
            forward,
            self.config.ssh,
            direction=direction,
            op=HelperOp.CONNECT,
            user=user,
            state_dir=self.config.state_dir,
        )
        logger.info("tunnel: connecting node %s for %s (forward %s)", node, job_ref, forward or "generic")
        return self.launcher.launch(argv, node, job_ref)

    def local_user_init(self, env: Optional[MutableMapping[str, str]] = None) -> int:
        """Submit side: tunnel to the selected allocated node(s)."""
        env = os.environ if env is None else env
        mode = self._mode(env)
        if mode == ForwardMode.NONE:
            return 0

        try:
            job_ref = self.job_query.get_current_job_ref()
        except JobQueryFailed as e:
            logger.error("tunnel: unable to get job step: %s", e)
            return -1

        self.phases[job_ref] = HookPhase.LOCAL_SETUP
        forwards = self.option.forwards if self.option is not None else ()
        env[self.config.mode_env_var] = mode.value

        if mode == ForwardMode.BATCH:
            # The batch step forwards from the allocation node itself
            return 0

        try:
            node_expr = self.job_query.get_allocated_node_expr(job_ref)
        except JobQueryFailed as e:
            logger.error("tunnel: unable to get job infos: %s", e)
            return -3

        try:
            nodes = resolve_targets(node_expr, mode)
        except (InvalidExpression, EmptyNodeSet) as e:
            logger.error("tunnel: job %s: %s", job_ref, e)
            return -5

        tokens = []
        for node in nodes:
            for forward in forwards or (None,):
                handle = self._connect_node(node, job_ref, forward)
                if self._track(job_ref, handle):
                    tokens.append(handle.token)

        if tokens:
            env[self.config.forward_env_var] = ",".join(tokens)
            self.phases[job_ref] = HookPhase.ACTIVE
        return 0

    def user_init(self, env: Optional[MutableMapping[str, str]] = None) -> int:
        """Remote side: publish the negotiated forward in the step environment."""
        env = os.environ if env is None else env
        mode = self._mode(env)
        if mode == ForwardMode.NONE:
            return 0

        try:
            job_ref = self.job_query.get_current_job_ref()
        except JobQueryFailed as e:
            logger.error("tunnel: unable to get job step: %s", e)
            return -1

        if job_ref.is_batch and mode == ForwardMode.BATCH:
            self.phases[job_ref] = HookPhase.REMOTE_SETUP
            status = self._init_remote_batch(job_ref, env)
        elif mode != ForwardMode.BATCH:
            self.phases[job_ref] = HookPhase.REMOTE_SETUP
            status = self._init_remote_inter(job_ref, env)
        else:
            return 0

        if status == 0:
            self.phases[job_ref] = HookPhase.ACTIVE
        else:
            logger.error("tunnel: forwarding disabled for %s", job_ref)
        return status

    def _init_remote_inter(self, job_ref: JobRef, env: MutableMapping[str, str]) -> int:
        argv = build_helper_invocation(
            self.config.helper,
            None,
            job_ref,
            None,
            self.config.ssh,
            wait_for_greeting=True,
            op=HelperOp.GREET,
            state_dir=self.config.state_dir,
            timeout=self.config.handshake_timeout,
        )
        handle = self.launcher.launch(
            argv,
            socket.gethostname(),
            job_ref,
            timeout=self.config.handshake_timeout + GREETING_GRACE,
            expect_port=False,
        )
        # The greeting helper is one-shot
        handle.close()
        if handle.error is not None:
            return -4

        env[self.config.forward_env_var] = handle.token
        logger.info("tunnel: now using %s=%s", self.config.forward_env_var, handle.token)
        return 0

    def _init_remote_batch(self, job_ref: JobRef, env: MutableMapping[str, str]) -> int:
        try:
            forwards = parse_forwards(env.get(self.config.forward_env_var, ""))
        except ForwardSpecError as e:
            logger.error("tunnel: unable to read batch step inherited forwards: %s", e)
            return -1

        try:
            alloc_node = self.job_query.get_allocation_node(job_ref)
            uid = self.job_query.get_user_id(job_ref)
        except JobQueryFailed as e:
            logger.error("tunnel: unable to get job infos: %s", e)
            return -3

        try:
            user = pwd.getpwuid(uid).pw_name
        except KeyError:
            logger.error("tunnel: unable to get username for uid=%d", uid)
            return -10

        logger.info("tunnel: batch mode: forwarding to %s as %s", alloc_node, user)
        tokens = []
        for forward in forwards or (None,):
            handle = self._connect_node(alloc_node, job_ref, forward, Direction.TO_SUBMIT, user=user)
            if self._track(job_ref, handle):
                tokens.append(handle.token)

        if not tokens:
            return -6
        env[self.config.forward_env_var] = ",".join(tokens)
        return 0

    def remove_step(self, job_ref: JobRef) -> None:
        """Issue the helper's remove command once for a whole job step."""
        argv = build_remove_invocation(self.config.helper, job_ref, self.config.state_dir)
        run_remove_command(argv, self.config.removal_timeout)

    def exit(self, remote: bool = False, env: Optional[MutableMapping[str, str]] = None) -> int:
        """Step exit: tear down every tunnel of the step. Always returns 0.

        Registered helpers are stopped first, then a single remove command
        clears whatever the step left behind. On the remote side the remove
        is issued even when nothing was registered here.
        """
        try:
            job_ref = self.job_query.get_current_job_ref()
        except JobQueryFailed as e:
            logger.error("tunnel: unable to get job step at exit: %s", e)
            return 0

        had_tunnels = bool(self.registry.lookup(job_ref))
        self.registry.teardown(job_ref)
        if had_tunnels or (remote and self._mode(os.environ if env is None else env) != ForwardMode.NONE):
            try:
                self.remove_step(job_ref)
            except TeardownPartialFailure as e:
                logger.error("tunnel: unable to remove forwards of %s: %s", job_ref, e)

        self.phases.pop(job_ref, None)
        return 0

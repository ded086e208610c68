"""Job queries and allocated-node resolution."""

from spank_tunnel.cluster.base import JobQuery
from spank_tunnel.cluster.hostlist import expand_hostlist, resolve_targets
from spank_tunnel.cluster.local import StaticJobQuery
from spank_tunnel.cluster.slurm import SlurmJobQuery

__all__ = [
    "JobQuery",
    "SlurmJobQuery",
    "StaticJobQuery",
    "expand_hostlist",
    "resolve_targets",
]

"""Static job-query implementation for development and testing."""

from __future__ import annotations

import os
import socket
from typing import Optional

from spank_tunnel.cluster.base import JobQuery
from spank_tunnel.exceptions import JobQueryFailed
from spank_tunnel.types import JobRef


class StaticJobQuery(JobQuery):
    """Job query that answers from fixed values.

    Useful for testing and for driving the hooks outside a scheduler.
    Leaving a value as None makes the matching query fail.
    """

    def __init__(
        self,
        job_ref: Optional[JobRef],
        node_expr: Optional[str] = "localhost",
        alloc_node: Optional[str] = None,
        user_id: Optional[int] = None,
    ):
        self.job_ref = job_ref
        self.node_expr = node_expr
        self.alloc_node = alloc_node if alloc_node is not None else socket.gethostname()
        self.user_id = user_id if user_id is not None else os.getuid()
        self.calls: list[str] = []

    def get_current_job_ref(self) -> JobRef:
        self.calls.append("get_current_job_ref")
        if self.job_ref is None:
            raise JobQueryFailed("no current job step")
        return self.job_ref

    def get_allocated_node_expr(self, job_ref: JobRef) -> str:
        self.calls.append("get_allocated_node_expr")
        if self.node_expr is None:
            raise JobQueryFailed(f"job {job_ref} has no allocated nodes defined")
        return self.node_expr

    def get_allocation_node(self, job_ref: JobRef) -> str:
        self.calls.append("get_allocation_node")
        return self.alloc_node

    def get_user_id(self, job_ref: JobRef) -> int:
        self.calls.append("get_user_id")
        return self.user_id

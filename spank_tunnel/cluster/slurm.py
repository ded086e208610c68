"""SLURM job-query implementation."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
from typing import Mapping, Optional

from spank_tunnel.cluster.base import JobQuery
from spank_tunnel.exceptions import JobQueryFailed
from spank_tunnel.types import BATCH_STEP_ID, JobRef


def run(cmd: list[str], timeout: float = 10.0) -> str:
    """Run a command and return stdout."""
    return subprocess.check_output(cmd, text=True, timeout=timeout)


def command_available(cmd: str) -> bool:
    """Check if a command is available in PATH."""
    return shutil.which(cmd) is not None


def get_job_info(job_id: int) -> str:
    """Return full scontrol dump for a job."""
    return run(["scontrol", "show", "job", str(job_id)])


def extract_field(scontrol_text: str, name: str) -> Optional[str]:
    """Extract a Name=value field from scontrol output."""
    m = re.search(rf"(?:^|\s){name}=(\S+)", scontrol_text)
    if not m or m.group(1) in ("(null)", "None"):
        return None
    return m.group(1)


def extract_nodes(scontrol_text: str) -> Optional[str]:
    """Extract NodeList=... field."""
    return extract_field(scontrol_text, "NodeList")


def extract_alloc_node(scontrol_text: str) -> Optional[str]:
    """Extract AllocNode:Sid=node:sid field."""
    m = re.search(r"AllocNode:Sid=([^:\s]+):", scontrol_text)
    return m.group(1) if m else None


def extract_user_id(scontrol_text: str) -> Optional[int]:
    """Extract the numeric uid from UserId=name(uid)."""
    m = re.search(r"UserId=[^(\s]*\((\d+)\)", scontrol_text)
    return int(m.group(1)) if m else None


def parse_step_id(value: str) -> int:
    """Parse SLURM_STEP_ID, which is 'batch' for the batch script."""
    if value == "batch":
        return BATCH_STEP_ID
    return int(value)


class SlurmJobQuery(JobQuery):
    """Answer job queries from the step environment and scontrol."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = environ if environ is not None else os.environ

    def _job_info(self, job_ref: JobRef) -> str:
        if not command_available("scontrol"):
            raise JobQueryFailed("scontrol is not available")
        try:
            text = get_job_info(job_ref.job_id)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            raise JobQueryFailed(f"unable to get job infos for {job_ref}: {e}") from e
        if not re.search(rf"\bJobId={job_ref.job_id}\b", text):
            raise JobQueryFailed(f"job infos are invalid for {job_ref}")
        return text

    def get_current_job_ref(self) -> JobRef:
        job_id = self.environ.get("SLURM_JOB_ID") or self.environ.get("SLURM_JOBID")
        step_id = self.environ.get("SLURM_STEP_ID") or self.environ.get("SLURM_STEPID")
        if job_id is None or step_id is None:
            raise JobQueryFailed("SLURM_JOB_ID/SLURM_STEP_ID are not set")
        try:
            return JobRef(int(job_id), parse_step_id(step_id))
        except ValueError as e:
            raise JobQueryFailed(f"bad job step identifiers {job_id}.{step_id}") from e

    def get_allocated_node_expr(self, job_ref: JobRef) -> str:
        nodes = extract_nodes(self._job_info(job_ref))
        if nodes is None:
            raise JobQueryFailed(f"job {job_ref} has no allocated nodes defined")
        return nodes

    def get_allocation_node(self, job_ref: JobRef) -> str:
        node = extract_alloc_node(self._job_info(job_ref))
        if node is None:
            raise JobQueryFailed(f"job {job_ref} has no allocation node")
        return node

    def get_user_id(self, job_ref: JobRef) -> int:
        uid = extract_user_id(self._job_info(job_ref))
        if uid is None:
            raise JobQueryFailed(f"job {job_ref} has no user id")
        return uid

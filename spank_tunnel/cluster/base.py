"""Abstract job-query interface."""

from abc import ABC, abstractmethod

from spank_tunnel.types import JobRef


class JobQuery(ABC):
    """Abstract interface for describing the current job step.

    Implementations answer from whatever the scheduler offers:
    - SLURM (scontrol + step environment)
    - Static (development/testing)

    Every method raises JobQueryFailed when the scheduler cannot answer.
    Values are looked up on every hook invocation, never cached.
    """

    @abstractmethod
    def get_current_job_ref(self) -> JobRef:
        """Return the job id and step id of the running step."""
        pass

    @abstractmethod
    def get_allocated_node_expr(self, job_ref: JobRef) -> str:
        """Return the compact host-range expression of the allocation.

        Args:
            job_ref: Job step to query

        Returns:
            Host expression such as 'node[01-04]'
        """
        pass

    @abstractmethod
    def get_allocation_node(self, job_ref: JobRef) -> str:
        """Return the node the job was submitted from."""
        pass

    @abstractmethod
    def get_user_id(self, job_ref: JobRef) -> int:
        """Return the uid owning the job."""
        pass

"""Compute backend interface (Azure Batch or the local emulator)."""

from abc import ABC, abstractmethod
from typing import List

from batchdispatch.jobs.models import CreateResult, PoolSpec, TaskRecord, TaskSpec


class ComputeBackend(ABC):
    """Abstract interface for a remote compute-cluster API.

    Methods are synchronous; the dispatcher runs them in a thread executor.
    Create calls report conflicts and service errors as a CreateResult instead
    of raising. Everything else raises RemoteApiError on a service error.
    """

    @abstractmethod
    def create_pool(self, pool: PoolSpec) -> CreateResult:
        ...

    @abstractmethod
    def create_job(self, job_id: str, pool_id: str) -> CreateResult:
        ...

    @abstractmethod
    def add_tasks(self, job_id: str, tasks: List[TaskSpec]) -> None:
        """Submit a batch of tasks to a job."""
        ...

    @abstractmethod
    def list_tasks(self, job_id: str) -> List[TaskRecord]:
        """Current state of every task in a job."""
        ...

    @abstractmethod
    def read_task_file(self, job_id: str, task_id: str, file_name: str) -> str:
        """Read a file (e.g. stdout.txt) from the node a task ran on."""
        ...

    @abstractmethod
    def delete_job(self, job_id: str) -> None:
        """Delete a job. Deleting a job that does not exist is a no-op."""
        ...

    @abstractmethod
    def delete_pool(self, pool_id: str) -> None:
        """Delete a pool. Deleting a pool that does not exist is a no-op."""
        ...

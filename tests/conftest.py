"""Pytest configuration and fixtures."""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Set test environment variables before importing app modules
os.environ.setdefault("COMPUTE_DISPATCH_MODE", "local")
os.environ.setdefault("POLL_INTERVAL_SECONDS", "0.01")
os.environ.setdefault("LOCAL_POLLS_TO_COMPLETE", "2")
os.environ.setdefault("CLEANUP_POLICY", "always")
os.environ.setdefault("LOCAL_STORE_DIR", tempfile.mkdtemp(prefix="batchdispatch_test_store_"))

from batchdispatch.config import Settings  # noqa: E402
from batchdispatch.jobs.backend import ComputeBackend  # noqa: E402
from batchdispatch.jobs.errors import RemoteApiError  # noqa: E402
from batchdispatch.jobs.models import (  # noqa: E402
    ArtifactRef,
    CreateResult,
    PoolSpec,
    TaskRecord,
    TaskSpec,
    TaskState,
)
from batchdispatch.storage.base import ArtifactStore  # noqa: E402


class FakeComputeBackend(ComputeBackend):
    """Records every call. Tasks complete once list_tasks was called polls_to_complete times.

    polls_to_complete=None means tasks never complete.
    """

    def __init__(
        self,
        polls_to_complete: Optional[int] = 2,
        pool_results: Optional[List[CreateResult]] = None,
        job_results: Optional[List[CreateResult]] = None,
    ):
        self.polls_to_complete = polls_to_complete
        self.pool_results = list(pool_results or [])
        self.job_results = list(job_results or [])
        self.calls: List[tuple] = []
        self.tasks: Dict[str, List[TaskSpec]] = {}
        self.list_calls = 0
        self.fail_delete_pool = False

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def create_pool(self, pool: PoolSpec) -> CreateResult:
        self.calls.append(("create_pool", pool.pool_id))
        return self.pool_results.pop(0) if self.pool_results else CreateResult.created()

    def create_job(self, job_id: str, pool_id: str) -> CreateResult:
        self.calls.append(("create_job", job_id, pool_id))
        return self.job_results.pop(0) if self.job_results else CreateResult.created()

    def add_tasks(self, job_id: str, tasks: List[TaskSpec]) -> None:
        self.calls.append(("add_tasks", job_id, len(tasks)))
        self.tasks.setdefault(job_id, []).extend(tasks)

    def list_tasks(self, job_id: str) -> List[TaskRecord]:
        self.calls.append(("list_tasks", job_id))
        self.list_calls += 1
        done = (
            self.polls_to_complete is not None
            and self.list_calls >= self.polls_to_complete
        )
        state = TaskState.COMPLETED if done else TaskState.RUNNING
        return [
            TaskRecord(task_id=task.task_id, state=state, node_id=f"node{i % 2}")
            for i, task in enumerate(self.tasks.get(job_id, []))
        ]

    def read_task_file(self, job_id: str, task_id: str, file_name: str) -> str:
        self.calls.append(("read_task_file", job_id, task_id, file_name))
        return f"output of {task_id}"

    def delete_job(self, job_id: str) -> None:
        self.calls.append(("delete_job", job_id))

    def delete_pool(self, pool_id: str) -> None:
        self.calls.append(("delete_pool", pool_id))
        if self.fail_delete_pool:
            raise RemoteApiError("OperationTimedOut", "pool deletion timed out")


class FakeArtifactStore(ArtifactStore):
    def __init__(self, fail_on: Optional[str] = None):
        self.fail_on = fail_on
        self.calls: List[tuple] = []

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def ensure_container(self, container: str) -> None:
        self.calls.append(("ensure_container", container))

    def upload(self, container: str, local_path: str, ttl: timedelta) -> ArtifactRef:
        self.calls.append(("upload", container, local_path))
        if self.fail_on and local_path.endswith(self.fail_on):
            raise OSError(f"upload of {local_path} failed")
        name = Path(local_path).name
        return ArtifactRef(
            source_path=local_path,
            url=f"https://fake.blob/{container}/{name}?sp=r",
            file_path=name,
            expires_at=datetime.now(timezone.utc) + ttl,
        )

    def delete_container(self, container: str) -> None:
        self.calls.append(("delete_container", container))


@pytest.fixture
def make_config():
    """Build Settings with test-friendly timings."""
    def _make(**overrides) -> Settings:
        values = {
            "compute_dispatch_mode": "local",
            "poll_interval_seconds": 0.01,
            "completion_timeout_minutes": 1,
            "cleanup_policy": "always",
        }
        values.update(overrides)
        return Settings(**values)
    return _make


@pytest.fixture
def compute():
    return FakeComputeBackend()


@pytest.fixture
def store():
    return FakeArtifactStore()


@pytest.fixture
def input_files(tmp_path):
    """Three small CSV files, like the sample's stock inputs."""
    paths = []
    for i in range(3):
        path = tmp_path / f"stock{i}.csv"
        path.write_text(f"symbol,price\nSTK{i},{10 + i}.5\n")
        paths.append(str(path))
    return paths

"""Local compute backend for development without a Batch account.

Emulates the pool/job/task lifecycle in memory. Each call to list_tasks is one
scheduler tick: a task is assigned to a node and starts running on the first
tick, and runs its command line as a subprocess once it has been observed
`polls_to_complete` times. Output is captured to stdout.txt/stderr.txt in the
task directory, the way a Batch node does.
"""

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from batchdispatch.jobs.backend import ComputeBackend
from batchdispatch.jobs.errors import RemoteApiError
from batchdispatch.jobs.models import (
    STANDARD_ERROR_FILE_NAME,
    STANDARD_OUT_FILE_NAME,
    CreateResult,
    PoolSpec,
    TaskRecord,
    TaskSpec,
    TaskState,
)
from batchdispatch.storage.local_store import resolve_local_url

logger = logging.getLogger(__name__)


@dataclass
class _LocalTask:
    spec: TaskSpec
    node_id: str
    state: TaskState = TaskState.PENDING
    polls: int = 0
    exit_code: Optional[int] = None


@dataclass
class _LocalJob:
    job_id: str
    pool_id: str
    tasks: Dict[str, _LocalTask]


class LocalComputeBackend(ComputeBackend):
    def __init__(
        self,
        work_dir: Optional[str] = None,
        polls_to_complete: int = 2,
        task_timeout_seconds: float = 60.0,
    ):
        self._owns_work_dir = not work_dir
        self._work_dir = work_dir or tempfile.mkdtemp(prefix="batchdispatch_nodes_")
        self._polls_to_complete = max(1, polls_to_complete)
        self._task_timeout = task_timeout_seconds
        self._pools: Dict[str, PoolSpec] = {}
        self._jobs: Dict[str, _LocalJob] = {}
        self._lock = threading.Lock()

    @property
    def work_dir(self) -> str:
        return self._work_dir

    def create_pool(self, pool: PoolSpec) -> CreateResult:
        with self._lock:
            if pool.pool_id in self._pools:
                return CreateResult.already_exists("PoolExists")
            self._pools[pool.pool_id] = pool
        return CreateResult.created()

    def create_job(self, job_id: str, pool_id: str) -> CreateResult:
        with self._lock:
            if job_id in self._jobs:
                return CreateResult.already_exists("JobExists")
            if pool_id not in self._pools:
                return CreateResult.error("PoolNotFound", f"pool {pool_id} does not exist")
            self._jobs[job_id] = _LocalJob(job_id, pool_id, {})
        return CreateResult.created()

    def add_tasks(self, job_id: str, tasks: List[TaskSpec]) -> None:
        with self._lock:
            job = self._get_job(job_id)
            pool = self._pools[job.pool_id]
            for task in tasks:
                if task.task_id in job.tasks:
                    raise RemoteApiError("TaskExists", f"task {task.task_id}")
            for task in tasks:
                index = len(job.tasks) % max(1, pool.node_count)
                job.tasks[task.task_id] = _LocalTask(
                    spec=task, node_id=f"{pool.pool_id}-node{index}"
                )

    def list_tasks(self, job_id: str) -> List[TaskRecord]:
        with self._lock:
            job = self._get_job(job_id)
            tasks = list(job.tasks.values())

        records = []
        for task in tasks:
            self._tick(job_id, task)
            records.append(
                TaskRecord(
                    task_id=task.spec.task_id,
                    state=task.state,
                    node_id=task.node_id,
                    exit_code=task.exit_code,
                )
            )
        return records

    def read_task_file(self, job_id: str, task_id: str, file_name: str) -> str:
        with self._lock:
            job = self._get_job(job_id)
            if task_id not in job.tasks:
                raise RemoteApiError("TaskNotFound", f"task {task_id}")
        path = Path(self._task_dir(job_id, task_id)) / file_name
        if not path.is_file():
            raise RemoteApiError("FileNotFound", f"{file_name} of task {task_id}")
        return path.read_bytes().decode("utf-8", errors="replace")

    def delete_job(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.pop(job_id, None)
        if job is None:
            logger.info("[%s] was already gone", job_id)
            return
        shutil.rmtree(os.path.join(self._work_dir, job_id), ignore_errors=True)

    def delete_pool(self, pool_id: str) -> None:
        with self._lock:
            if self._pools.pop(pool_id, None) is None:
                logger.info("[%s] was already gone", pool_id)
            remove_work_dir = self._owns_work_dir and not self._pools
        # A self-created node directory goes away with the last pool
        if remove_work_dir:
            shutil.rmtree(self._work_dir, ignore_errors=True)

    def _get_job(self, job_id: str) -> _LocalJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise RemoteApiError("JobNotFound", f"job {job_id}")
        return job

    def _task_dir(self, job_id: str, task_id: str) -> str:
        return os.path.join(self._work_dir, job_id, task_id)

    def _tick(self, job_id: str, task: _LocalTask) -> None:
        if task.state == TaskState.COMPLETED:
            return
        task.polls += 1
        if task.polls < self._polls_to_complete:
            task.state = TaskState.RUNNING
            return
        task.exit_code = self._execute(job_id, task.spec)
        task.state = TaskState.COMPLETED

    def _execute(self, job_id: str, spec: TaskSpec) -> int:
        task_dir = Path(self._task_dir(job_id, spec.task_id))
        wd = task_dir / "wd"
        wd.mkdir(parents=True, exist_ok=True)

        try:
            for ref in spec.resource_files:
                shutil.copyfile(resolve_local_url(ref.url), wd / ref.file_path)
            proc = subprocess.run(
                shlex.split(spec.command_line),
                cwd=wd,
                capture_output=True,
                timeout=self._task_timeout,
            )
            stdout, stderr, exit_code = proc.stdout, proc.stderr, proc.returncode
        except (OSError, ValueError, subprocess.TimeoutExpired) as exc:
            logger.warning("Task %s failed to run: %s", spec.task_id, exc)
            stdout, stderr, exit_code = b"", str(exc).encode("utf-8"), 1

        (task_dir / STANDARD_OUT_FILE_NAME).write_bytes(stdout)
        (task_dir / STANDARD_ERROR_FILE_NAME).write_bytes(stderr)
        return exit_code

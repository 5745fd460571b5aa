"""Batch dispatcher: upload inputs, fan tasks out to a pool, poll, collect stdout.

One run drives a batch of independent tasks to completion:

1. Upload every input file to the input container
2. Create the pool and the job (an existing pool/job is reused)
3. Add one task per input file
4. Poll the task states until all are completed or the timeout elapses
5. Read back each task's stdout
6. Delete the job, pool and container, according to the cleanup policy

All parallelism happens in the compute service. Blocking SDK calls are run in
the default thread executor so the event loop stays responsive.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from batchdispatch.config import Settings, settings as default_settings
from batchdispatch.jobs.backend import ComputeBackend
from batchdispatch.jobs.errors import (
    CleanupError,
    ConfigurationError,
    DispatchError,
    DispatchTimeoutError,
    RemoteApiError,
)
from batchdispatch.jobs.models import (
    STANDARD_OUT_FILE_NAME,
    ArtifactRef,
    CleanupPolicy,
    CreateResult,
    CreateStatus,
    PoolSpec,
    TaskOutput,
    TaskSpec,
    TaskState,
)
from batchdispatch.storage.base import ArtifactStore

logger = logging.getLogger(__name__)


def task_sort_key(task_id: str) -> Tuple:
    """Natural ordering for task ids, so Task2 sorts before Task10."""
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in re.split(r"(\d+)", task_id)
        if part
    )


class _ResourceScope:
    """Remote resources acquired by a run, released on exit per cleanup policy."""

    def __init__(self, policy: CleanupPolicy):
        self._policy = policy
        self._releases: List[Tuple[str, Callable[[], Awaitable[None]]]] = []
        self.succeeded = False

    def acquired(self, label: str, release: Callable[[], Awaitable[None]]) -> None:
        self._releases.append((label, release))

    async def close(self) -> List[str]:
        """Release in reverse acquisition order. Returns labels that failed."""
        if not self._policy.should_release(self.succeeded):
            if self._releases:
                logger.warning(
                    "Leaving %s allocated (cleanup policy: %s)",
                    ", ".join(label for label, _ in self._releases),
                    self._policy.value,
                )
            return []

        failures = []
        for label, release in reversed(self._releases):
            try:
                await release()
            except Exception:
                logger.exception("Failed to delete %s", label)
                failures.append(label)
        return failures


class BatchDispatcher:
    """Drives one batch of independent remote tasks to completion."""

    def __init__(
        self,
        compute: ComputeBackend,
        store: ArtifactStore,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        self._compute = compute
        self._store = store
        self._container = config.input_container_name
        self._job_id = config.job_id
        self._pool = PoolSpec(
            pool_id=config.pool_id,
            node_count=config.pool_node_count,
            vm_size=config.pool_vm_size,
            image_publisher=config.image_publisher,
            image_offer=config.image_offer,
            image_sku=config.image_sku,
            image_version=config.image_version,
            node_agent_sku_id=config.node_agent_sku_id,
        )
        self._command_template = config.task_command_template
        self._artifact_ttl = timedelta(hours=config.artifact_ttl_hours)
        self._poll_interval = config.poll_interval_seconds
        self._timeout = timedelta(minutes=config.completion_timeout_minutes)
        self._cleanup_policy = CleanupPolicy(config.cleanup_policy)

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def pool_id(self) -> str:
        return self._pool.pool_id

    @property
    def container(self) -> str:
        return self._container

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    # ------------------------------------------------------------------
    # Workflow steps
    # ------------------------------------------------------------------

    async def upload(self, local_paths: Sequence[str]) -> List[ArtifactRef]:
        """Upload input files to the shared container, creating it if absent."""
        await self._call(self._store.ensure_container, self._container)
        artifacts = []
        for path in local_paths:
            ref = await self._call(self._store.upload, self._container, path, self._artifact_ttl)
            artifacts.append(ref)
        return artifacts

    async def ensure_pool(self, pool: Optional[PoolSpec] = None) -> CreateStatus:
        pool = pool or self._pool
        logger.info("Creating pool [%s]...", pool.pool_id)
        result = await self._call(self._compute.create_pool, pool)
        return self._accept_created("pool", pool.pool_id, result)

    async def ensure_job(
        self, job_id: Optional[str] = None, pool_id: Optional[str] = None
    ) -> CreateStatus:
        job_id = job_id or self._job_id
        pool_id = pool_id or self._pool.pool_id
        logger.info("Creating job [%s]...", job_id)
        result = await self._call(self._compute.create_job, job_id, pool_id)
        return self._accept_created("job", job_id, result)

    def _accept_created(self, kind: str, resource_id: str, result: CreateResult) -> CreateStatus:
        if result.status == CreateStatus.ALREADY_EXISTS:
            logger.info("The %s %s already existed when we tried to create it", kind, resource_id)
        elif result.status == CreateStatus.ERROR:
            raise RemoteApiError(result.code, result.message)
        return result.status

    def build_tasks(self, artifacts: Sequence[ArtifactRef]) -> List[TaskSpec]:
        """One task per artifact; the command line consumes the artifact by file name."""
        return [
            TaskSpec(
                task_id=f"Task{i}",
                command_line=self._command_template.format(file_path=ref.file_path),
                resource_files=[ref],
            )
            for i, ref in enumerate(artifacts)
        ]

    async def submit_tasks(
        self, job_id: str, artifacts: Sequence[ArtifactRef]
    ) -> List[TaskSpec]:
        now = datetime.now(timezone.utc)
        expired = [ref.source_path for ref in artifacts if ref.is_expired(now)]
        if expired:
            raise DispatchError(f"Artifact access expired before submission: {expired}")

        tasks = self.build_tasks(artifacts)
        logger.info("Adding %d tasks to job [%s]...", len(tasks), job_id)
        if tasks:
            await self._call(self._compute.add_tasks, job_id, tasks)
        return tasks

    async def await_completion(
        self,
        job_id: str,
        task_ids: Optional[Sequence[str]] = None,
        timeout: Optional[timedelta] = None,
    ) -> int:
        """Poll until every task is completed. Returns the number of polls made.

        task_ids lists the tasks that must be observed; by default whatever the
        first poll reports. Raises DispatchTimeoutError once timeout elapses.
        """
        timeout = self._timeout if timeout is None else timeout
        logger.info("Monitoring all tasks for 'Completed' state, timeout in %s...", timeout)
        try:
            polls = await asyncio.wait_for(
                self._poll_until_completed(job_id, set(task_ids or ())),
                timeout=timeout.total_seconds(),
            )
        except asyncio.TimeoutError:
            raise DispatchTimeoutError(job_id, timeout) from None
        logger.info("All tasks reached state Completed.")
        return polls

    async def _poll_until_completed(self, job_id: str, expected: set) -> int:
        polls = 0
        while True:
            tasks = await self._call(self._compute.list_tasks, job_id)
            polls += 1
            seen = {t.task_id for t in tasks}
            waiting = [t.task_id for t in tasks if t.state != TaskState.COMPLETED]
            missing = expected - seen
            if not waiting and not missing:
                return polls
            logger.debug(
                "Poll %d: %d task(s) not completed, %d not yet listed",
                polls, len(waiting), len(missing),
            )
            await asyncio.sleep(self._poll_interval)

    async def collect_outputs(self, job_id: str) -> List[TaskOutput]:
        """Read the captured stdout of every task, ordered by task id."""
        tasks = await self._call(self._compute.list_tasks, job_id)
        outputs = []
        for task in sorted(tasks, key=lambda t: task_sort_key(t.task_id)):
            stdout = await self._call(
                self._compute.read_task_file, job_id, task.task_id, STANDARD_OUT_FILE_NAME
            )
            outputs.append(TaskOutput(task_id=task.task_id, node_id=task.node_id, stdout=stdout))
        return outputs

    async def cleanup(
        self,
        job_id: Optional[str] = None,
        pool_id: Optional[str] = None,
        container: Optional[str] = None,
    ) -> None:
        """Delete the job, pool and container. Every deletion is attempted."""
        scope = _ResourceScope(CleanupPolicy.ALWAYS)
        self._register(scope, container or self._container, pool_id or self._pool.pool_id,
                       job_id or self._job_id)
        failures = await scope.close()
        if failures:
            raise CleanupError(failures)

    def _register(
        self,
        scope: _ResourceScope,
        container: Optional[str] = None,
        pool_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> None:
        if container:
            scope.acquired(f"container [{container}]", partial(self._delete_container, container))
        if pool_id:
            scope.acquired(f"pool [{pool_id}]", partial(self._delete_pool, pool_id))
        if job_id:
            scope.acquired(f"job [{job_id}]", partial(self._delete_job, job_id))

    async def _delete_container(self, container: str) -> None:
        await self._call(self._store.delete_container, container)
        logger.info("Container [%s] deleted.", container)

    async def _delete_pool(self, pool_id: str) -> None:
        await self._call(self._compute.delete_pool, pool_id)
        logger.info("Pool [%s] deleted.", pool_id)

    async def _delete_job(self, job_id: str) -> None:
        await self._call(self._compute.delete_job, job_id)
        logger.info("Job [%s] deleted.", job_id)

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def run(self, local_paths: Sequence[str]) -> List[TaskOutput]:
        """Run the whole workflow and return the stdout of every task.

        Each remote resource is registered for release as soon as it is
        acquired; on exit the cleanup policy decides whether it is deleted.
        """
        scope = _ResourceScope(self._cleanup_policy)
        try:
            self._register(scope, container=self._container)
            artifacts = await self.upload(local_paths)

            await self.ensure_pool()
            self._register(scope, pool_id=self._pool.pool_id)
            await self.ensure_job()
            self._register(scope, job_id=self._job_id)

            tasks = await self.submit_tasks(self._job_id, artifacts)
            await self.await_completion(self._job_id, [t.task_id for t in tasks])
            outputs = await self.collect_outputs(self._job_id)
            scope.succeeded = True
        finally:
            failures = await scope.close()

        if failures:
            raise CleanupError(failures)
        return outputs


def create_dispatcher(config: Optional[Settings] = None) -> BatchDispatcher:
    """Build a dispatcher for the configured dispatch mode."""
    config = config or default_settings

    if config.compute_dispatch_mode == "azure":
        missing = config.missing_credentials()
        if missing:
            raise ConfigurationError(
                "One or more account credentials have not been set: " + ", ".join(missing)
            )
        from batchdispatch.jobs.azure_batch import AzureBatchBackend
        from batchdispatch.storage.azure_blob import AzureBlobStore

        return BatchDispatcher(
            AzureBatchBackend.from_settings(config),
            AzureBlobStore.from_settings(config),
            config,
        )

    from batchdispatch.jobs.local_backend import LocalComputeBackend
    from batchdispatch.storage.local_store import LocalArtifactStore

    return BatchDispatcher(
        LocalComputeBackend(polls_to_complete=config.local_polls_to_complete),
        LocalArtifactStore(config.local_store_dir or None),
        config,
    )

"""Azure Batch implementation of the compute backend."""

import logging
from typing import List, Optional, Tuple

import azure.batch.models as batchmodels
from azure.batch import BatchServiceClient
from azure.batch.batch_auth import SharedKeyCredentials

from batchdispatch.config import Settings
from batchdispatch.jobs.backend import ComputeBackend
from batchdispatch.jobs.errors import RemoteApiError
from batchdispatch.jobs.models import (
    CreateResult,
    PoolSpec,
    TaskRecord,
    TaskSpec,
    TaskState,
)

logger = logging.getLogger(__name__)

POOL_EXISTS = "PoolExists"
JOB_EXISTS = "JobExists"
_NOT_FOUND_CODES = {"PoolNotFound", "JobNotFound"}

# Service limit for a single add_collection request
MAX_TASKS_PER_REQUEST = 100

_STATE_MAP = {
    batchmodels.TaskState.active: TaskState.PENDING,
    batchmodels.TaskState.preparing: TaskState.PENDING,
    batchmodels.TaskState.running: TaskState.RUNNING,
    batchmodels.TaskState.completed: TaskState.COMPLETED,
}


def _error_details(err: batchmodels.BatchErrorException) -> Tuple[Optional[str], str]:
    """Extract (code, message) from a Batch service error."""
    error = getattr(err, "error", None)
    if error is None:
        return None, ""
    message = getattr(error.message, "value", None) or ""
    return error.code, message


class AzureBatchBackend(ComputeBackend):
    """Talks to an Azure Batch account through the azure-batch SDK."""

    def __init__(self, client: BatchServiceClient, encoding: str = "utf-8"):
        self._client = client
        self._encoding = encoding

    @classmethod
    def from_settings(cls, config: Settings) -> "AzureBatchBackend":
        credentials = SharedKeyCredentials(
            config.batch_account_name, config.batch_account_key
        )
        client = BatchServiceClient(credentials, batch_url=config.batch_account_url)
        return cls(client)

    def create_pool(self, pool: PoolSpec) -> CreateResult:
        params = batchmodels.PoolAddParameter(
            id=pool.pool_id,
            virtual_machine_configuration=batchmodels.VirtualMachineConfiguration(
                image_reference=batchmodels.ImageReference(
                    publisher=pool.image_publisher,
                    offer=pool.image_offer,
                    sku=pool.image_sku,
                    version=pool.image_version,
                ),
                node_agent_sku_id=pool.node_agent_sku_id,
            ),
            vm_size=pool.vm_size,
            target_dedicated_nodes=pool.node_count,
        )
        return self._create(self._client.pool.add, params, POOL_EXISTS)

    def create_job(self, job_id: str, pool_id: str) -> CreateResult:
        params = batchmodels.JobAddParameter(
            id=job_id,
            pool_info=batchmodels.PoolInformation(pool_id=pool_id),
        )
        return self._create(self._client.job.add, params, JOB_EXISTS)

    def _create(self, add, params, exists_code: str) -> CreateResult:
        try:
            add(params)
        except batchmodels.BatchErrorException as err:
            code, message = _error_details(err)
            if code == exists_code:
                return CreateResult.already_exists(code)
            return CreateResult.error(code, message)
        return CreateResult.created()

    def add_tasks(self, job_id: str, tasks: List[TaskSpec]) -> None:
        for start in range(0, len(tasks), MAX_TASKS_PER_REQUEST):
            chunk = [
                batchmodels.TaskAddParameter(
                    id=task.task_id,
                    command_line=task.command_line,
                    resource_files=[
                        batchmodels.ResourceFile(http_url=ref.url, file_path=ref.file_path)
                        for ref in task.resource_files
                    ],
                )
                for task in tasks[start:start + MAX_TASKS_PER_REQUEST]
            ]
            try:
                result = self._client.task.add_collection(job_id, chunk)
            except batchmodels.BatchErrorException as err:
                raise RemoteApiError(*_error_details(err)) from err

            for added in result.value or []:
                if added.status != batchmodels.TaskAddStatus.success:
                    code, detail = None, f"task {added.task_id}"
                    if added.error is not None:
                        code = added.error.code
                        message = getattr(added.error.message, "value", None)
                        if message:
                            detail = f"{detail}: {message}"
                    raise RemoteApiError(code or "TaskAddFailed", detail)

    def list_tasks(self, job_id: str) -> List[TaskRecord]:
        try:
            cloud_tasks = list(self._client.task.list(job_id))
        except batchmodels.BatchErrorException as err:
            raise RemoteApiError(*_error_details(err)) from err

        records = []
        for task in cloud_tasks:
            node_id = task.node_info.node_id if task.node_info else None
            exit_code = task.execution_info.exit_code if task.execution_info else None
            records.append(
                TaskRecord(
                    task_id=task.id,
                    state=_STATE_MAP.get(task.state, TaskState.PENDING),
                    node_id=node_id,
                    exit_code=exit_code,
                )
            )
        return records

    def read_task_file(self, job_id: str, task_id: str, file_name: str) -> str:
        try:
            stream = self._client.file.get_from_task(job_id, task_id, file_name)
            content = b"".join(stream)
        except batchmodels.BatchErrorException as err:
            raise RemoteApiError(*_error_details(err)) from err
        return content.decode(self._encoding, errors="replace")

    def delete_job(self, job_id: str) -> None:
        self._delete(self._client.job.delete, job_id)

    def delete_pool(self, pool_id: str) -> None:
        self._delete(self._client.pool.delete, pool_id)

    def _delete(self, delete, resource_id: str) -> None:
        try:
            delete(resource_id)
        except batchmodels.BatchErrorException as err:
            code, message = _error_details(err)
            if code in _NOT_FOUND_CODES:
                logger.info("[%s] was already gone", resource_id)
                return
            raise RemoteApiError(code, message) from err

"""Tests for the Azure Batch and Azure Blob adapters with mocked SDK clients."""

import base64
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import azure.batch.models as batchmodels
import pytest
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError

from batchdispatch.jobs.azure_batch import MAX_TASKS_PER_REQUEST, AzureBatchBackend
from batchdispatch.jobs.errors import RemoteApiError
from batchdispatch.jobs.models import (
    ArtifactRef,
    CreateStatus,
    PoolSpec,
    TaskSpec,
    TaskState,
)
from batchdispatch.storage.azure_blob import AzureBlobStore


def batch_error(code, message=""):
    """A BatchErrorException carrying the given service error code."""
    err = batchmodels.BatchErrorException.__new__(batchmodels.BatchErrorException)
    err.error = batchmodels.BatchError(
        code=code, message=batchmodels.ErrorMessage(value=message)
    )
    return err


def _pool():
    return PoolSpec(
        pool_id="pool-1",
        node_count=2,
        vm_size="STANDARD_A1_v2",
        image_publisher="canonical",
        image_offer="0001-com-ubuntu-server-jammy",
        image_sku="22_04-lts",
        node_agent_sku_id="batch.node.ubuntu 22.04",
    )


@pytest.fixture
def client():
    client = MagicMock()
    client.task.add_collection.return_value = SimpleNamespace(value=[])
    return client


class TestAzureBatchBackend:

    def test_create_pool_builds_vm_configuration(self, client):
        backend = AzureBatchBackend(client)

        result = backend.create_pool(_pool())

        assert result.status == CreateStatus.CREATED
        params = client.pool.add.call_args[0][0]
        assert params.id == "pool-1"
        assert params.vm_size == "STANDARD_A1_v2"
        assert params.target_dedicated_nodes == 2
        vm_config = params.virtual_machine_configuration
        assert vm_config.image_reference.publisher == "canonical"
        assert vm_config.node_agent_sku_id == "batch.node.ubuntu 22.04"

    def test_pool_exists_is_reported_not_raised(self, client):
        client.pool.add.side_effect = batch_error("PoolExists")

        result = AzureBatchBackend(client).create_pool(_pool())

        assert result.status == CreateStatus.ALREADY_EXISTS

    def test_other_pool_error_is_tagged(self, client):
        client.pool.add.side_effect = batch_error("AccountQuotaExceeded", "no cores left")

        result = AzureBatchBackend(client).create_pool(_pool())

        assert result.status == CreateStatus.ERROR
        assert result.code == "AccountQuotaExceeded"
        assert result.message == "no cores left"

    def test_job_exists_is_reported_not_raised(self, client):
        client.job.add.side_effect = batch_error("JobExists")

        result = AzureBatchBackend(client).create_job("job-1", "pool-1")

        assert result.status == CreateStatus.ALREADY_EXISTS
        assert client.job.add.call_args[0][0].pool_info.pool_id == "pool-1"

    def test_pool_exists_code_does_not_excuse_a_job(self, client):
        client.job.add.side_effect = batch_error("PoolExists")

        result = AzureBatchBackend(client).create_job("job-1", "pool-1")

        assert result.status == CreateStatus.ERROR

    def test_add_tasks_splits_into_service_sized_requests(self, client):
        ref = ArtifactRef(
            "/data/a.csv", "https://acct.blob/input/a.csv?sp=r", "a.csv",
            datetime.now(timezone.utc) + timedelta(hours=2),
        )
        tasks = [TaskSpec(f"Task{i}", "cat a.csv", [ref]) for i in range(250)]

        AzureBatchBackend(client).add_tasks("job-1", tasks)

        sizes = [len(call[0][1]) for call in client.task.add_collection.call_args_list]
        assert sizes == [MAX_TASKS_PER_REQUEST, MAX_TASKS_PER_REQUEST, 50]
        first = client.task.add_collection.call_args_list[0][0][1][0]
        assert first.resource_files[0].http_url == ref.url
        assert first.resource_files[0].file_path == "a.csv"

    def test_add_tasks_raises_on_rejected_task(self, client):
        client.task.add_collection.return_value = SimpleNamespace(value=[
            batchmodels.TaskAddResult(
                status=batchmodels.TaskAddStatus.client_error,
                task_id="Task0",
                error=batchmodels.BatchError(code="TaskExists"),
            )
        ])

        with pytest.raises(RemoteApiError) as excinfo:
            AzureBatchBackend(client).add_tasks("job-1", [TaskSpec("Task0", "true")])
        assert excinfo.value.code == "TaskExists"

    def test_list_tasks_projects_states(self, client):
        client.task.list.return_value = [
            SimpleNamespace(id="Task0", state=batchmodels.TaskState.active,
                            node_info=None, execution_info=None),
            SimpleNamespace(id="Task1", state=batchmodels.TaskState.running,
                            node_info=SimpleNamespace(node_id="tvm-1"), execution_info=None),
            SimpleNamespace(id="Task2", state=batchmodels.TaskState.completed,
                            node_info=SimpleNamespace(node_id="tvm-2"),
                            execution_info=SimpleNamespace(exit_code=0)),
        ]

        records = AzureBatchBackend(client).list_tasks("job-1")

        assert [r.state for r in records] == [
            TaskState.PENDING, TaskState.RUNNING, TaskState.COMPLETED,
        ]
        assert records[2].node_id == "tvm-2"
        assert records[2].exit_code == 0

    def test_read_task_file_joins_stream(self, client):
        client.file.get_from_task.return_value = iter([b"symbol,price\n", b"STK0,10.5\n"])

        text = AzureBatchBackend(client).read_task_file("job-1", "Task0", "stdout.txt")

        assert text == "symbol,price\nSTK0,10.5\n"
        client.file.get_from_task.assert_called_once_with("job-1", "Task0", "stdout.txt")

    def test_read_task_file_replaces_invalid_bytes(self, client):
        client.file.get_from_task.return_value = iter([b"caf\xe9\n"])

        text = AzureBatchBackend(client).read_task_file("job-1", "Task0", "stdout.txt")

        assert text == "caf\ufffd\n"

    def test_delete_missing_resources_is_a_no_op(self, client):
        client.job.delete.side_effect = batch_error("JobNotFound")
        client.pool.delete.side_effect = batch_error("PoolNotFound")
        backend = AzureBatchBackend(client)

        backend.delete_job("job-1")
        backend.delete_pool("pool-1")

    def test_delete_failure_raises(self, client):
        client.pool.delete.side_effect = batch_error("PoolBeingResized")

        with pytest.raises(RemoteApiError):
            AzureBatchBackend(client).delete_pool("pool-1")


class TestAzureBlobStore:

    ACCOUNT_KEY = base64.b64encode(b"k" * 32).decode("ascii")

    def _store(self):
        service = MagicMock()
        blob_client = MagicMock()
        blob_client.url = "https://acct.blob.core.windows.net/input/stock0.csv"
        service.get_blob_client.return_value = blob_client
        return AzureBlobStore("acct", self.ACCOUNT_KEY, service_client=service), service, blob_client

    def test_upload_returns_read_only_sas_url(self, input_files):
        store, service, blob_client = self._store()

        ref = store.upload("input", input_files[0], timedelta(hours=2))

        service.get_blob_client.assert_called_once_with(container="input", blob="stock0.csv")
        assert blob_client.upload_blob.call_count == 1
        assert ref.file_path == "stock0.csv"
        assert ref.url.startswith(blob_client.url + "?")
        assert "sp=r" in ref.url
        assert "se=" in ref.url
        assert not ref.is_expired()

    def test_ensure_container_tolerates_existing(self):
        store, service, _ = self._store()
        service.create_container.side_effect = ResourceExistsError("exists")

        store.ensure_container("input")

        service.create_container.assert_called_once_with("input")

    def test_delete_missing_container_is_a_no_op(self):
        store, service, _ = self._store()
        service.delete_container.side_effect = ResourceNotFoundError("gone")

        store.delete_container("input")

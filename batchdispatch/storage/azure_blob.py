"""Azure Blob Storage implementation of the artifact store."""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobSasPermissions, BlobServiceClient, generate_blob_sas

from batchdispatch.config import Settings
from batchdispatch.jobs.models import ArtifactRef
from batchdispatch.storage.base import ArtifactStore

logger = logging.getLogger(__name__)


class AzureBlobStore(ArtifactStore):
    """Uploads task inputs as block blobs and hands out read-only SAS URLs."""

    def __init__(
        self,
        account_name: str,
        account_key: str,
        service_client: Optional[BlobServiceClient] = None,
    ):
        self._account_name = account_name
        self._account_key = account_key
        if service_client is None:
            service_client = BlobServiceClient(
                account_url=f"https://{account_name}.blob.core.windows.net",
                credential={"account_name": account_name, "account_key": account_key},
            )
        self._client = service_client

    @classmethod
    def from_settings(cls, config: Settings) -> "AzureBlobStore":
        return cls(config.storage_account_name, config.storage_account_key)

    def ensure_container(self, container: str) -> None:
        try:
            self._client.create_container(container)
            logger.info("Container [%s] created.", container)
        except ResourceExistsError:
            logger.info("Container [%s] already exists.", container)

    def upload(self, container: str, local_path: str, ttl: timedelta) -> ArtifactRef:
        blob_name = Path(local_path).name
        logger.info("Uploading file %s to container [%s]...", local_path, container)

        blob_client = self._client.get_blob_client(container=container, blob=blob_name)
        with open(local_path, "rb") as data:
            blob_client.upload_blob(data, overwrite=True)

        # No start time: the signature is valid immediately
        expires_at = datetime.now(timezone.utc) + ttl
        sas_token = generate_blob_sas(
            account_name=self._account_name,
            container_name=container,
            blob_name=blob_name,
            account_key=self._account_key,
            permission=BlobSasPermissions(read=True),
            expiry=expires_at,
        )
        return ArtifactRef(
            source_path=str(local_path),
            url=f"{blob_client.url}?{sas_token}",
            file_path=blob_name,
            expires_at=expires_at,
        )

    def delete_container(self, container: str) -> None:
        try:
            self._client.delete_container(container)
        except ResourceNotFoundError:
            logger.info("Container [%s] was already gone.", container)

"""Artifact store interface for task input files."""

from abc import ABC, abstractmethod
from datetime import timedelta

from batchdispatch.jobs.models import ArtifactRef


class ArtifactStore(ABC):
    """Abstract interface for the blob store tasks read their inputs from."""

    @abstractmethod
    def ensure_container(self, container: str) -> None:
        """Create the container if it does not exist."""
        ...

    @abstractmethod
    def upload(self, container: str, local_path: str, ttl: timedelta) -> ArtifactRef:
        """Upload a file and return a read-only reference valid for ttl."""
        ...

    @abstractmethod
    def delete_container(self, container: str) -> None:
        """Delete the container and its contents. Missing containers are ignored."""
        ...

"""Directory-backed artifact store for local mode, with TTL-based cleanup."""

import logging
import os
import shutil
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse
from urllib.request import url2pathname

from batchdispatch.jobs.models import ArtifactRef
from batchdispatch.storage.base import ArtifactStore

logger = logging.getLogger(__name__)


class LocalArtifactStore(ArtifactStore):
    """Stores each container as a directory under base_dir.

    Uploaded files are addressed by file:// URLs whose query carries the
    expiry (`se`) and permission (`sp`), mirroring a blob SAS URL.
    """

    def __init__(self, base_dir: Optional[str] = None):
        if base_dir:
            self._base_dir = base_dir
        else:
            self._base_dir = os.path.join(tempfile.gettempdir(), "batchdispatch_store")
        os.makedirs(self._base_dir, exist_ok=True)

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def container_dir(self, container: str) -> str:
        return os.path.join(self._base_dir, container)

    def ensure_container(self, container: str) -> None:
        os.makedirs(self.container_dir(container), exist_ok=True)

    def upload(self, container: str, local_path: str, ttl: timedelta) -> ArtifactRef:
        name = Path(local_path).name
        logger.info("Uploading file %s to container [%s]...", local_path, container)
        dest = Path(self.container_dir(container)) / name
        shutil.copyfile(local_path, dest)

        expires_at = datetime.now(timezone.utc) + ttl
        query = urlencode({"se": expires_at.isoformat(), "sp": "r"})
        return ArtifactRef(
            source_path=str(local_path),
            url=f"{dest.resolve().as_uri()}?{query}",
            file_path=name,
            expires_at=expires_at,
        )

    def delete_container(self, container: str) -> None:
        path = self.container_dir(container)
        if not os.path.isdir(path):
            logger.info("Container [%s] was already gone.", container)
            return
        shutil.rmtree(path)

    def cleanup_expired(self, ttl_hours: float) -> int:
        """Remove container directories older than ttl_hours. Returns count removed."""
        now = time.time()
        removed = 0
        if not os.path.exists(self._base_dir):
            return 0
        for entry in os.listdir(self._base_dir):
            path = os.path.join(self._base_dir, entry)
            if not os.path.isdir(path):
                continue
            if now - os.path.getmtime(path) > ttl_hours * 3600:
                shutil.rmtree(path, ignore_errors=True)
                removed += 1
        return removed


def resolve_local_url(url: str, now: Optional[datetime] = None) -> Path:
    """Map a file:// artifact URL back to a path, refusing expired ones."""
    parsed = urlparse(url)
    if parsed.scheme != "file":
        raise ValueError(f"Not a local artifact URL: {url}")
    params = parse_qs(parsed.query)
    expiry = params.get("se")
    if expiry:
        now = now or datetime.now(timezone.utc)
        if now >= datetime.fromisoformat(expiry[0]):
            raise PermissionError(f"Access token for {url} has expired")
    return Path(url2pathname(parsed.path))

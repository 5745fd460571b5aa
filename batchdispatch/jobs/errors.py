"""Errors raised by a dispatch run."""

from datetime import timedelta
from typing import List, Optional


class DispatchError(Exception):
    """Base class for every failure of a dispatch run."""


class ConfigurationError(DispatchError):
    """Settings are incomplete or inconsistent. Raised before any remote call."""


class RemoteApiError(DispatchError):
    """The compute or storage service rejected a request."""

    def __init__(self, code: Optional[str], message: str = ""):
        self.code = code or "Unknown"
        self.message = message
        detail = f"{self.code}: {message}" if message else self.code
        super().__init__(detail)


class DispatchTimeoutError(DispatchError):
    def __init__(self, job_id: str, timeout: timedelta):
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(
            f"Tasks of job [{job_id}] did not complete within {timeout}"
        )


class CleanupError(DispatchError):
    """One or more remote resources could not be released."""

    def __init__(self, failures: List[str]):
        self.failures = failures
        super().__init__("Failed to delete: " + ", ".join(failures))

"""Data model for dispatch runs: artifacts, pools, tasks and run records."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field
import uuid

# Name of the captured standard-output file on a compute node
STANDARD_OUT_FILE_NAME = "stdout.txt"
STANDARD_ERROR_FILE_NAME = "stderr.txt"


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


class CreateStatus(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    ERROR = "error"


class CleanupPolicy(str, Enum):
    ALWAYS = "always"
    ON_SUCCESS = "on_success"
    NEVER = "never"

    def should_release(self, succeeded: bool) -> bool:
        if self is CleanupPolicy.ALWAYS:
            return True
        if self is CleanupPolicy.ON_SUCCESS:
            return succeeded
        return False


@dataclass(frozen=True)
class CreateResult:
    """Outcome of an idempotent create call against the compute service."""
    status: CreateStatus
    code: Optional[str] = None
    message: str = ""

    @classmethod
    def created(cls) -> "CreateResult":
        return cls(CreateStatus.CREATED)

    @classmethod
    def already_exists(cls, code: Optional[str] = None) -> "CreateResult":
        return cls(CreateStatus.ALREADY_EXISTS, code)

    @classmethod
    def error(cls, code: Optional[str], message: str = "") -> "CreateResult":
        return cls(CreateStatus.ERROR, code, message)


@dataclass(frozen=True)
class ArtifactRef:
    """An uploaded input file and the time-limited URL a task reads it from."""
    source_path: str
    url: str
    file_path: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


@dataclass
class PoolSpec:
    pool_id: str
    node_count: int
    vm_size: str
    image_publisher: str
    image_offer: str
    image_sku: str
    image_version: str = "latest"
    node_agent_sku_id: str = ""


@dataclass
class TaskSpec:
    """One unit of remote work: a command line and the artifact it consumes."""
    task_id: str
    command_line: str
    resource_files: List[ArtifactRef] = field(default_factory=list)


@dataclass
class TaskRecord:
    """Observed state of a task, as reported by the compute service."""
    task_id: str
    state: TaskState
    node_id: Optional[str] = None
    exit_code: Optional[int] = None


class TaskOutput(BaseModel):
    task_id: str
    node_id: Optional[str] = None
    stdout: str = ""


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunRecord(BaseModel):
    """Tracks the lifecycle of one dispatch run submitted through the API."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: RunStatus = RunStatus.PENDING
    input_files: List[str] = Field(default_factory=list)
    outputs: List[TaskOutput] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

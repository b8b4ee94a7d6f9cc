"""Task specification, execution record and agent metrics models."""

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskbox.models.containers import DEFAULT_LOG_LINES
from taskbox.utils.validation import (
    validate_command,
    validate_cpu,
    validate_memory,
    validate_repository_url,
)

SUPPORTED_RUNTIMES = ("python", "node")


class TaskKind(str, Enum):
    """Kinds of tasks a caller can submit."""

    REPOSITORY_ANALYSIS = "repository-analysis"
    CODE_GENERATION = "code-generation"
    TESTING = "testing"
    DEPLOYMENT = "deployment"
    CUSTOM = "custom"


class TaskStatus(str, Enum):
    """Lifecycle status of a task record."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskRequirements(BaseModel):
    """Resources and tooling a task needs from its container."""

    model_config = ConfigDict(extra="forbid")

    editor: bool = Field(default=False, description="Provision editor tooling")
    runtimes: List[str] = Field(default_factory=list, description="Language runtimes (python, node)")
    memory: Optional[str] = Field(None, description="Memory override, e.g. 4g")
    cpu: Optional[str] = Field(None, description="CPU override, e.g. 4")

    @field_validator("runtimes")
    @classmethod
    def _check_runtimes(cls, value: List[str]) -> List[str]:
        unknown = [r for r in value if r not in SUPPORTED_RUNTIMES]
        if unknown:
            raise ValueError(f"unsupported runtimes {unknown}; expected any of {list(SUPPORTED_RUNTIMES)}")
        return value

    @field_validator("memory")
    @classmethod
    def _check_memory(cls, value: Optional[str]) -> Optional[str]:
        return validate_memory(value) if value is not None else None

    @field_validator("cpu")
    @classmethod
    def _check_cpu(cls, value: Optional[str]) -> Optional[str]:
        return validate_cpu(value) if value is not None else None


class TaskSpec(BaseModel):
    """A caller-specified sequence of shell commands plus metadata."""

    kind: TaskKind = Field(default=TaskKind.CUSTOM, description="Task kind")
    description: str = Field(default="", description="Human description of the task")
    repository_url: Optional[str] = Field(None, description="Repository cloned before the commands")
    commands: List[str] = Field(default_factory=list, description="Ordered shell commands")
    requirements: TaskRequirements = Field(default_factory=TaskRequirements)

    @field_validator("repository_url")
    @classmethod
    def _check_repository_url(cls, value: Optional[str]) -> Optional[str]:
        return validate_repository_url(value) if value is not None else None

    @field_validator("commands")
    @classmethod
    def _check_commands(cls, value: List[str]) -> List[str]:
        return [validate_command(c) for c in value]


@dataclass
class CommandResult:
    """Outcome of a single command executed inside a container."""

    command: str
    stdout: str = ""
    stderr: str = ""
    success: bool = False
    exit_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: int = 0
    timed_out: bool = False
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass
class TaskRecord:
    """Binds a task spec to the container it runs in and tracks its progress."""

    id: str
    spec: TaskSpec
    container_id: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    results: List[CommandResult] = field(default_factory=list)
    setup_results: List[CommandResult] = field(default_factory=list)
    logs: Deque[str] = field(default_factory=lambda: deque(maxlen=DEFAULT_LOG_LINES))
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def duration_s(self) -> Optional[float]:
        """Wall-clock duration in seconds, once the task has finished."""
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def log(self, line: str) -> None:
        """Append a line to the rolling log buffer."""
        self.logs.append(line)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "kind": self.spec.kind.value,
            "description": self.spec.description,
            "container_id": self.container_id,
            "status": self.status.value,
            "results": [r.to_dict() for r in self.results],
            "setup_results": [r.to_dict() for r in self.setup_results],
            "logs": list(self.logs),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error": self.error,
        }


@dataclass
class AgentMetrics:
    """Running counters kept by a task agent for its lifetime."""

    containers_created: int = 0
    containers_destroyed: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_execution_time: float = 0.0
    average_task_duration: float = 0.0
    last_active: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record_completed(self, duration_s: float) -> None:
        """Count a completed task and recompute the average duration."""
        self.tasks_completed += 1
        self.total_execution_time += duration_s
        self.average_task_duration = self.total_execution_time / self.tasks_completed
        self.last_active = datetime.now(timezone.utc)

    def record_failed(self) -> None:
        """Count a failed task."""
        self.tasks_failed += 1
        self.last_active = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["last_active"] = self.last_active.isoformat()
        return data

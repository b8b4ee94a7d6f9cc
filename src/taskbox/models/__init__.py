"""Data models for Taskbox."""

from .containers import (
    ContainerConfig,
    ContainerConfigOverrides,
    ContainerInstance,
    ContainerStatus,
)
from .tasks import (
    AgentMetrics,
    CommandResult,
    TaskKind,
    TaskRecord,
    TaskRequirements,
    TaskSpec,
    TaskStatus,
)

__all__ = [
    "AgentMetrics",
    "CommandResult",
    "ContainerConfig",
    "ContainerConfigOverrides",
    "ContainerInstance",
    "ContainerStatus",
    "TaskKind",
    "TaskRecord",
    "TaskRequirements",
    "TaskSpec",
    "TaskStatus",
]

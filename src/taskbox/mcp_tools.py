"""MCP tool input/output models for task and container management."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from taskbox.models.tasks import TaskKind, TaskRequirements
from taskbox.utils.validation import validate_command

# Task tools


class ExecuteTaskInput(BaseModel):
    """Input model for execute_task tool."""

    kind: TaskKind = Field(default=TaskKind.CUSTOM, description="Task kind")
    description: str = Field(default="", description="Human description of the task")
    repository_url: Optional[str] = Field(None, description="Repository cloned into the workspace first")
    commands: List[str] = Field(default_factory=list, description="Shell commands run in order")
    requirements: TaskRequirements = Field(
        default_factory=TaskRequirements, description="Resources and tooling the task needs"
    )
    timeout_s: Optional[int] = Field(None, description="Task deadline in seconds")


class AnalyzeRepositoryInput(BaseModel):
    """Input model for analyze_repository tool."""

    repository_url: str = Field(..., description="Repository to analyze")
    analysis_commands: List[str] = Field(..., description="Commands run inside the checkout")
    create_pull_request: bool = Field(default=False, description="Open a pull request with the results")


class TaskOutput(BaseModel):
    """Output model for task tools."""

    task_id: str = Field(..., description="Task ID (t_xxx)")
    status: str = Field(..., description="Final task status (completed/failed)")
    container_id: Optional[str] = Field(None, description="Container the task ran in")
    results: List[Dict[str, Any]] = Field(..., description="One result per command, in order")
    setup_results: List[Dict[str, Any]] = Field(
        default_factory=list, description="Results of clone and provisioning steps"
    )
    duration_s: Optional[float] = Field(None, description="Task duration in seconds")
    error: Optional[str] = Field(None, description="Task-level error, if any")


class CancelTaskInput(BaseModel):
    """Input model for cancel_task tool."""

    task_id: str = Field(..., description="Task ID to cancel")


class CancelTaskOutput(BaseModel):
    """Output model for cancel_task tool."""

    task_id: str = Field(..., description="Task ID")
    cancelled: bool = Field(..., description="Whether a cancellation was requested")


# Container tools


class CreateContainerInput(BaseModel):
    """Input model for create_container tool."""

    name: Optional[str] = Field(None, description="Name prefix for the container")
    image: Optional[str] = Field(None, description="Image reference")
    memory: Optional[str] = Field(None, description="Memory limit, e.g. 2g")
    cpu: Optional[str] = Field(None, description="CPU share, e.g. 2")
    ports: Optional[List[str]] = Field(None, description="Port mappings host:container")
    volumes: Optional[List[str]] = Field(None, description="Volume mappings src:dst[:mode]")
    environment: Optional[Dict[str, str]] = Field(None, description="Extra environment variables")


class ContainerOutput(BaseModel):
    """Output model for create_container tool."""

    container_id: str = Field(..., description="Container ID (c_xxx)")
    name: str = Field(..., description="Container name")
    status: str = Field(..., description="Container status")
    ip_address: Optional[str] = Field(None, description="Container IP address")


class ExecCommandsInput(BaseModel):
    """Input model for exec_commands tool."""

    container_id: str = Field(..., description="Container ID to run commands in")
    commands: List[str] = Field(..., description="Shell commands run in order")
    halt_on_error: Optional[bool] = Field(None, description="Skip the rest after a failure")
    timeout_s: Optional[int] = Field(None, description="Per-command timeout in seconds")

    @field_validator("commands")
    @classmethod
    def _check_commands(cls, value: List[str]) -> List[str]:
        return [validate_command(c) for c in value]


class ExecCommandsOutput(BaseModel):
    """Output model for exec_commands tool."""

    container_id: str = Field(..., description="Container ID")
    results: List[Dict[str, Any]] = Field(..., description="One result per command, in order")


class ContainerIdInput(BaseModel):
    """Input model for tools addressing one container."""

    container_id: str = Field(..., description="Container ID")


class DestroyContainerOutput(BaseModel):
    """Output model for destroy_container tool."""

    container_id: str = Field(..., description="Container ID")
    status: str = Field(..., description="Status after the operation")


class ContainerListOutput(BaseModel):
    """Output model for container list tool."""

    containers: List[Dict[str, Any]] = Field(..., description="List of container information")


class ContainerLogsOutput(BaseModel):
    """Output model for container_logs tool."""

    container_id: str = Field(..., description="Container ID")
    lines: List[str] = Field(..., description="Log lines")


# Admin and monitoring tools


class AgentStatusOutput(BaseModel):
    """Output model for agent_status tool."""

    enabled: bool = Field(..., description="Whether task execution is enabled")
    agent: Dict[str, Any] = Field(..., description="Agent state, counts and metrics")
    registered_containers: int = Field(..., description="Containers known to the manager")


class ActiveAgentsOutput(BaseModel):
    """Output model for active_agents tool."""

    entries: List[Dict[str, Any]] = Field(..., description="Status board entries")


class MetricsOutput(BaseModel):
    """Output model for metrics tool."""

    metrics: str = Field(..., description="Prometheus metrics in text format")

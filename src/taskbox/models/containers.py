"""Container configuration and runtime instance models."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskbox.utils.validation import (
    validate_cpu,
    validate_env_key,
    validate_memory,
    validate_port_mapping,
    validate_volume,
    validate_working_directory,
)

DEFAULT_LOG_LINES = 1000


class ContainerStatus(str, Enum):
    """Lifecycle status of a container instance."""

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    DESTROYED = "destroyed"


class FrozenEnvironment(dict):
    """Environment mapping that rejects mutation once built."""

    def _readonly(self, *args, **kwargs):
        raise TypeError("container environment is read-only")

    __setitem__ = __delitem__ = __ior__ = _readonly
    clear = pop = popitem = setdefault = update = _readonly

    def __reduce__(self):
        return (type(self), (dict(self),))


class ContainerConfigOverrides(BaseModel):
    """Caller-supplied values merged onto the default container configuration."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    image: Optional[str] = None
    memory: Optional[str] = None
    cpu: Optional[str] = None
    ports: Optional[List[str]] = None
    volumes: Optional[List[str]] = None
    environment: Optional[Dict[str, str]] = None
    working_directory: Optional[str] = None
    auto_remove: Optional[bool] = None


class ContainerConfig(BaseModel):
    """Immutable configuration a container instance is created from."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Generated container ID (c_xxx)")
    name: str = Field(..., description="Human-readable container name")
    image: str = Field(..., description="Image reference")
    memory: str = Field(..., description="Memory limit, e.g. 2g")
    cpu: str = Field(..., description="CPU share, e.g. 2")
    ports: tuple[str, ...] = Field(default=(), description="Port mappings host:container")
    volumes: tuple[str, ...] = Field(default=(), description="Volume mappings src:dst[:mode]")
    environment: Dict[str, str] = Field(
        default_factory=dict, validate_default=True, description="Environment variables"
    )
    working_directory: str = Field(default="/workspace", description="Working directory")
    auto_remove: bool = Field(default=False, description="Engine removes the container on stop")

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value or value.startswith("-"):
            raise ValueError("container name must be non-empty and must not start with '-'")
        return value

    @field_validator("image")
    @classmethod
    def _check_image(cls, value: str) -> str:
        if not value or value.startswith("-") or any(ch.isspace() for ch in value):
            raise ValueError("image reference must be non-empty, without whitespace or a leading '-'")
        return value

    @field_validator("memory")
    @classmethod
    def _check_memory(cls, value: str) -> str:
        return validate_memory(value)

    @field_validator("cpu")
    @classmethod
    def _check_cpu(cls, value: str) -> str:
        return validate_cpu(value)

    @field_validator("ports")
    @classmethod
    def _check_ports(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(validate_port_mapping(p) for p in value)

    @field_validator("volumes")
    @classmethod
    def _check_volumes(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(validate_volume(v) for v in value)

    @field_validator("environment")
    @classmethod
    def _check_environment(cls, value: Dict[str, str]) -> Dict[str, str]:
        for key in value:
            validate_env_key(key)
        return FrozenEnvironment(value)

    @field_validator("working_directory")
    @classmethod
    def _check_working_directory(cls, value: str) -> str:
        return validate_working_directory(value)


@dataclass
class ContainerInstance:
    """A tracked container and its lifecycle state."""

    id: str
    config: ContainerConfig
    status: ContainerStatus = ContainerStatus.CREATING
    runtime_id: Optional[str] = None
    ip_address: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    logs: Deque[str] = field(default_factory=lambda: deque(maxlen=DEFAULT_LOG_LINES))
    task_id: Optional[str] = None
    agent_id: Optional[str] = None

    def log(self, line: str) -> None:
        """Append a line to the rolling log buffer."""
        self.logs.append(line)

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.config.name,
            "image": self.config.image,
            "memory": self.config.memory,
            "cpu": self.config.cpu,
            "status": self.status.value,
            "runtime_id": self.runtime_id,
            "ip_address": self.ip_address,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
        }

    def __repr__(self) -> str:
        """String representation of ContainerInstance."""
        return (
            f"<ContainerInstance(id={self.id}, name={self.config.name}, "
            f"status={self.status.value}, runtime_id={self.runtime_id})>"
        )

"""Settings and configuration management for Taskbox."""

from functools import lru_cache
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TASKBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Container engine configuration
    engine_backend: Literal["cli", "sdk"] = Field(
        default="cli",
        description="Engine backend: 'cli' drives the engine binary, 'sdk' uses the Docker API",
    )

    engine_binary: str = Field(
        default="docker",
        description="Container engine binary used by the CLI backend",
    )

    docker_host: str | None = Field(
        default=None,
        description="Docker daemon host URL for the SDK backend (defaults to Docker's standard detection)",
    )

    # Default container baseline
    default_image: str = Field(
        default="ubuntu:22.04",
        description="Base image for task containers",
    )

    default_memory: str = Field(
        default="2g",
        description="Default memory limit (engine notation, e.g. 512m, 2g)",
    )

    default_cpu: str = Field(
        default="2",
        description="Default CPU share",
    )

    default_ports: str = Field(
        default="3000:3000,8080:8080",
        description="Comma-separated list of default port mappings",
    )

    working_directory: str = Field(
        default="/workspace",
        description="Working directory inside task containers",
    )

    container_name_prefix: str = Field(
        default="taskbox-vm",
        description="Prefix for human-readable container names",
    )

    auto_remove: bool = Field(
        default=False,
        description="Ask the engine to remove containers when they stop",
    )

    bootstrap_enabled: bool = Field(
        default=True,
        description="Run the package refresh and tooling install sequence on create",
    )

    command_shell: str = Field(
        default="bash",
        description="Shell used inside the container to interpret task commands",
    )

    # Execution deadlines
    command_timeout_s: int = Field(
        default=600,
        description="Per-command timeout in seconds",
    )

    task_timeout_s: int = Field(
        default=1800,
        description="Per-task timeout in seconds",
    )

    stop_timeout_s: int = Field(
        default=10,
        description="Seconds to wait for a graceful stop before the engine kills the container",
    )

    halt_on_error: bool = Field(
        default=False,
        description="Stop a command sequence at the first failing command",
    )

    # Agent configuration
    max_concurrent_tasks: int = Field(
        default=3,
        description="Maximum number of tasks (and therefore containers) in flight per agent",
    )

    max_log_lines: int = Field(
        default=1000,
        description="Rolling log buffer size per container and per task",
    )

    event_history_size: int = Field(
        default=1000,
        description="Number of published events kept in the event bus history",
    )

    status_linger_completed_s: float = Field(
        default=5.0,
        description="Seconds a completed task stays on the status board",
    )

    status_linger_failed_s: float = Field(
        default=10.0,
        description="Seconds a failed task stays on the status board",
    )

    drain_grace_s: int = Field(
        default=60,
        description="Grace period in seconds for draining tasks during shutdown",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    log_format: str = Field(
        default="json",
        description="Log format (json or text)",
    )

    # Server configuration
    transport_mode: Literal["stdio", "sse", "streamable-http"] = Field(
        default="stdio",
        description="Transport protocol for the MCP server (stdio, sse, or streamable-http)",
    )

    host: str = Field(
        default="0.0.0.0",
        description="Server host to bind to",
    )

    port: int = Field(
        default=8000,
        description="Server port to bind to",
    )

    path: str = Field(
        default="/mcp",
        description="Path for HTTP-based transports (sse or streamable-http)",
    )

    @property
    def default_ports_list(self) -> List[str]:
        """Parse default port mappings into a list."""
        return [p.strip() for p in self.default_ports.split(",") if p.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

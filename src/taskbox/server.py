"""Taskbox MCP server implementation using FastMCP 2."""

import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastmcp import FastMCP
from pydantic import BaseModel

from taskbox import __version__
from taskbox.config import get_settings
from taskbox.managers.shutdown_coordinator import setup_signal_handlers
from taskbox.mcp_tools import (
    ActiveAgentsOutput,
    AgentStatusOutput,
    AnalyzeRepositoryInput,
    CancelTaskInput,
    CancelTaskOutput,
    ContainerIdInput,
    ContainerListOutput,
    ContainerLogsOutput,
    ContainerOutput,
    CreateContainerInput,
    DestroyContainerOutput,
    ExecCommandsInput,
    ExecCommandsOutput,
    ExecuteTaskInput,
    MetricsOutput,
    TaskOutput,
)
from taskbox.models.containers import ContainerConfigOverrides
from taskbox.models.tasks import TaskRecord, TaskSpec
from taskbox.runtime import TaskboxContext
from taskbox.utils import get_logger, setup_logging
from taskbox.utils.exceptions import EngineError

logger = get_logger(__name__)

_context: Optional[TaskboxContext] = None


class HealthCheckResponse(BaseModel):
    """Health check response model."""

    status: str
    engine_connected: bool
    engine: str
    version: str = __version__


def set_context(context: Optional[TaskboxContext]) -> None:
    """Install the context served by the tools."""
    global _context
    _context = context


def get_context() -> TaskboxContext:
    """
    Get the context served by the tools.

    Raises:
        RuntimeError: If the server has not been started
    """
    if _context is None:
        raise RuntimeError("Taskbox context is not initialized")
    return _context


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Lifespan context manager for startup and shutdown tasks."""
    settings = get_settings()
    logger.info("Starting Taskbox server", extra={"version": __version__})

    context = TaskboxContext(settings=settings)
    await context.init()
    set_context(context)

    loop = asyncio.get_running_loop()

    def interrupt(_: asyncio.Future) -> None:
        # Containers are gone; hand the signal back to the transport so it exits
        signal.signal(signal.SIGTERM, signal.SIG_DFL)
        signal.signal(signal.SIGINT, signal.default_int_handler)
        signal.raise_signal(signal.SIGINT)

    def start_shutdown() -> None:
        task = loop.create_task(context.shutdown_coordinator.initiate_shutdown())
        task.add_done_callback(interrupt)

    def request_shutdown() -> None:
        loop.call_soon_threadsafe(start_shutdown)

    try:
        setup_signal_handlers(request_shutdown)
    except ValueError:
        # Signal handlers can only be installed from the main thread
        logger.debug("Signal handlers not installed outside the main thread")

    try:
        yield
    finally:
        logger.info("Shutting down Taskbox server")
        await context.shutdown()
        set_context(None)
        logger.info("Taskbox server stopped")


mcp = FastMCP("Taskbox", lifespan=lifespan)


def _task_output(record: TaskRecord) -> TaskOutput:
    return TaskOutput(
        task_id=record.id,
        status=record.status.value,
        container_id=record.container_id,
        results=[r.to_dict() for r in record.results],
        setup_results=[r.to_dict() for r in record.setup_results],
        duration_s=record.duration_s,
        error=record.error,
    )


@mcp.tool()
async def health() -> HealthCheckResponse:
    """
    Health check endpoint to verify server status and engine connectivity.

    Returns:
        HealthCheckResponse with status and engine connection info
    """
    context = get_context()
    try:
        await context.engine.ping()
        engine_connected = True
    except EngineError as e:
        logger.warning("Engine health check failed", extra={"error": str(e)})
        engine_connected = False

    return HealthCheckResponse(
        status="healthy" if engine_connected and context.enabled else "degraded",
        engine_connected=engine_connected,
        engine=context.engine.name,
    )


@mcp.tool()
async def execute_task(input_data: ExecuteTaskInput) -> TaskOutput:
    """
    Run a task in a fresh container that is destroyed afterwards.

    Args:
        input_data: Task kind, description, repository, commands and requirements

    Returns:
        TaskOutput with one result per command
    """
    spec = TaskSpec(
        kind=input_data.kind,
        description=input_data.description,
        repository_url=input_data.repository_url,
        commands=input_data.commands,
        requirements=input_data.requirements,
    )
    logger.info(
        "Executing task",
        extra={"kind": spec.kind.value, "commands": len(spec.commands)},
    )

    try:
        record = await get_context().agent.execute_task(spec, timeout_s=input_data.timeout_s)
    except Exception as e:
        logger.error("Failed to execute task", extra={"error": str(e)})
        raise

    return _task_output(record)


@mcp.tool()
async def analyze_repository(input_data: AnalyzeRepositoryInput) -> TaskOutput:
    """
    Clone a repository onto an analysis branch and run analysis commands.

    Args:
        input_data: Repository URL, analysis commands and pull request flag

    Returns:
        TaskOutput with one result per command
    """
    logger.info("Analyzing repository", extra={"repository_url": input_data.repository_url})

    try:
        record = await get_context().agent.analyze_repository(
            input_data.repository_url,
            input_data.analysis_commands,
            create_pull_request=input_data.create_pull_request,
        )
    except Exception as e:
        logger.error("Failed to analyze repository", extra={"error": str(e)})
        raise

    return _task_output(record)


@mcp.tool()
async def cancel_task(input_data: CancelTaskInput) -> CancelTaskOutput:
    """
    Cancel an in-flight task. Its container is still torn down.

    Args:
        input_data: Task ID

    Returns:
        CancelTaskOutput telling whether a cancellation was requested
    """
    cancelled = get_context().agent.cancel_task(input_data.task_id)
    return CancelTaskOutput(task_id=input_data.task_id, cancelled=cancelled)


@mcp.tool()
async def create_container(input_data: CreateContainerInput) -> ContainerOutput:
    """
    Create, start and bootstrap a standalone container.

    Args:
        input_data: Optional configuration overrides

    Returns:
        ContainerOutput with container ID, name and address
    """
    overrides = ContainerConfigOverrides(**input_data.model_dump(exclude_none=True))
    context = get_context()

    try:
        instance = await context.manager.create_container(overrides)
    except Exception as e:
        logger.error("Failed to create container", extra={"error": str(e)})
        raise

    return ContainerOutput(
        container_id=instance.id,
        name=instance.config.name,
        status=instance.status.value,
        ip_address=instance.ip_address,
    )


@mcp.tool()
async def exec_commands(input_data: ExecCommandsInput) -> ExecCommandsOutput:
    """
    Run shell commands in order inside a running container.

    Args:
        input_data: Container ID, commands and execution policy

    Returns:
        ExecCommandsOutput with one result per command
    """
    results = await get_context().manager.execute_commands(
        input_data.container_id,
        input_data.commands,
        halt_on_error=input_data.halt_on_error,
        timeout_s=input_data.timeout_s,
    )
    return ExecCommandsOutput(
        container_id=input_data.container_id,
        results=[r.to_dict() for r in results],
    )


@mcp.tool()
async def destroy_container(input_data: ContainerIdInput) -> DestroyContainerOutput:
    """
    Stop and remove a container.

    Args:
        input_data: Container ID

    Returns:
        DestroyContainerOutput with status
    """
    try:
        await get_context().manager.destroy_container(input_data.container_id)
    except Exception as e:
        logger.error(
            "Failed to destroy container",
            extra={"container_id": input_data.container_id, "error": str(e)},
        )
        raise

    return DestroyContainerOutput(container_id=input_data.container_id, status="destroyed")


@mcp.tool()
async def list_containers() -> ContainerListOutput:
    """
    List registered containers.

    Returns:
        ContainerListOutput with container details
    """
    instances = get_context().manager.list_containers()
    return ContainerListOutput(containers=[instance.to_dict() for instance in instances])


@mcp.tool()
async def container_logs(input_data: ContainerIdInput) -> ContainerLogsOutput:
    """
    Get a container's log lines.

    Args:
        input_data: Container ID

    Returns:
        ContainerLogsOutput with log lines
    """
    lines = await get_context().manager.get_logs(input_data.container_id)
    return ContainerLogsOutput(container_id=input_data.container_id, lines=lines)


@mcp.tool()
async def agent_status() -> AgentStatusOutput:
    """
    Get the task agent's state and metrics.

    Returns:
        AgentStatusOutput with agent status
    """
    context = get_context()
    return AgentStatusOutput(
        enabled=context.enabled,
        agent=context.agent.get_status(),
        registered_containers=len(context.manager.list_containers()),
    )


@mcp.tool()
async def active_agents() -> ActiveAgentsOutput:
    """
    Get the containers and tasks currently on the status board.

    Returns:
        ActiveAgentsOutput with status entries
    """
    entries = get_context().status_board.list_active()
    return ActiveAgentsOutput(entries=[entry.to_dict() for entry in entries])


@mcp.tool()
async def metrics() -> MetricsOutput:
    """
    Get Prometheus metrics for monitoring.

    Returns:
        MetricsOutput with Prometheus-formatted metrics
    """
    logger.debug("Metrics endpoint accessed")
    metrics_data = get_context().metrics.get_metrics().decode("utf-8")
    return MetricsOutput(metrics=metrics_data)


def main() -> None:
    """Main entry point for the Taskbox server."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, log_format=settings.log_format)

    logger.info(
        "Starting server",
        extra={
            "transport": settings.transport_mode,
            "engine_backend": settings.engine_backend,
            "host": settings.host if settings.transport_mode != "stdio" else "N/A",
            "port": settings.port if settings.transport_mode != "stdio" else "N/A",
        },
    )

    try:
        # FastMCP expects "streamable-http" spelled as "http"
        transport_map = {
            "stdio": "stdio",
            "sse": "sse",
            "streamable-http": "http",
        }

        run_kwargs = {"transport": transport_map[settings.transport_mode]}
        if settings.transport_mode in ("sse", "streamable-http"):
            run_kwargs["host"] = settings.host
            run_kwargs["port"] = settings.port
            run_kwargs["path"] = settings.path

        mcp.run(**run_kwargs)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()

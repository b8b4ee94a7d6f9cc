"""Tests for the MCP server tools."""

import inspect

import pytest
from pydantic import ValidationError

from taskbox import mcp_tools, server
from taskbox.mcp_tools import (
    AnalyzeRepositoryInput,
    CancelTaskInput,
    ContainerIdInput,
    CreateContainerInput,
    ExecCommandsInput,
    ExecuteTaskInput,
    TaskOutput,
)
from taskbox.runtime import TaskboxContext
from taskbox.utils.exceptions import ContainerNotFoundError, TaskNotFoundError

# Access the underlying functions (unwrapped from @mcp.tool decorator)
health = server.health.fn
execute_task = server.execute_task.fn
analyze_repository = server.analyze_repository.fn
cancel_task = server.cancel_task.fn
create_container = server.create_container.fn
exec_commands = server.exec_commands.fn
destroy_container = server.destroy_container.fn
list_containers = server.list_containers.fn
container_logs = server.container_logs.fn
agent_status = server.agent_status.fn
active_agents = server.active_agents.fn
metrics = server.metrics.fn


@pytest.fixture
async def context(settings, engine, event_bus):
    """Initialized context installed for the tools."""
    ctx = TaskboxContext(settings=settings, engine=engine, event_bus=event_bus)
    await ctx.init()
    server.set_context(ctx)
    yield ctx
    await ctx.shutdown()
    server.set_context(None)


def test_all_tool_models_are_pydantic_models():
    """Verify all MCP tool inputs and outputs are Pydantic models."""
    models = [
        obj
        for name, obj in inspect.getmembers(mcp_tools)
        if inspect.isclass(obj) and (name.endswith("Input") or name.endswith("Output"))
    ]

    assert len(models) > 0
    for model in models:
        assert hasattr(model, "model_json_schema")


def test_get_context_requires_server():
    """Test that tools fail clearly before the server starts."""
    server.set_context(None)

    with pytest.raises(RuntimeError):
        server.get_context()


def test_input_validation():
    """Test that malformed tool inputs are rejected."""
    with pytest.raises(ValidationError):
        ExecuteTaskInput(kind="unknown-kind")
    with pytest.raises(ValidationError):
        AnalyzeRepositoryInput(repository_url="https://github.com/org/repo")


def test_exec_commands_input_rejects_unusable_commands():
    """Test that commands which cannot be passed to a shell are rejected up front."""
    with pytest.raises(ValidationError):
        ExecCommandsInput(container_id="c_1", commands=["echo \x00"])
    with pytest.raises(ValidationError):
        ExecCommandsInput(container_id="c_1", commands=["echo a", "  "])

    assert ExecCommandsInput(container_id="c_1", commands=["echo a"]).commands == ["echo a"]


@pytest.mark.asyncio
async def test_health(context):
    """Test health check with a reachable engine."""
    result = await health()

    assert result.status == "healthy"
    assert result.engine_connected is True
    assert result.engine == "fake"


@pytest.mark.asyncio
async def test_health_degraded(context, engine):
    """Test health check when the engine stops answering."""
    engine.available = False

    result = await health()

    assert result.status == "degraded"
    assert result.engine_connected is False


@pytest.mark.asyncio
async def test_execute_task_tool(context, engine):
    """Test running a task through the tool."""
    result = await execute_task(ExecuteTaskInput(commands=["echo one", "false", "echo three"]))

    assert isinstance(result, TaskOutput)
    assert result.task_id.startswith("t_")
    assert result.status == "failed"
    assert [r["success"] for r in result.results] == [True, False, True]
    assert result.results[0]["stdout"] == "one\n"
    assert engine.containers == {}


@pytest.mark.asyncio
async def test_analyze_repository_tool(context, engine):
    """Test repository analysis through the tool."""
    result = await analyze_repository(
        AnalyzeRepositoryInput(
            repository_url="https://github.com/org/repo.git",
            analysis_commands=["echo analyzed"],
        )
    )

    assert result.status == "completed"
    assert [r["command"] for r in result.results] == [
        "git checkout -b feature/automated-analysis",
        "echo analyzed",
    ]
    assert any(step["command"].startswith("git clone") for step in result.setup_results)


@pytest.mark.asyncio
async def test_cancel_unknown_task(context):
    """Test cancelling an unknown task."""
    with pytest.raises(TaskNotFoundError):
        await cancel_task(CancelTaskInput(task_id="t_missing"))


@pytest.mark.asyncio
async def test_cancel_finished_task(context):
    """Test cancelling a task that already finished."""
    finished = await execute_task(ExecuteTaskInput(commands=["echo done"]))

    result = await cancel_task(CancelTaskInput(task_id=finished.task_id))

    assert result.cancelled is False


@pytest.mark.asyncio
async def test_container_lifecycle_tools(context, engine):
    """Test create, exec, logs, list and destroy through the tools."""
    created = await create_container(CreateContainerInput(memory="1g", environment={"A": "1"}))

    assert created.container_id.startswith("c_")
    assert created.status == "running"
    assert created.ip_address == "172.17.0.2"

    executed = await exec_commands(
        ExecCommandsInput(container_id=created.container_id, commands=["echo hi", "exit 2"])
    )
    assert [r["exit_code"] for r in executed.results] == [0, 2]

    listed = await list_containers()
    assert [c["id"] for c in listed.containers] == [created.container_id]

    logs = await container_logs(ContainerIdInput(container_id=created.container_id))
    assert logs.lines == ["first line", "second line"]

    destroyed = await destroy_container(ContainerIdInput(container_id=created.container_id))
    assert destroyed.status == "destroyed"
    assert (await list_containers()).containers == []
    assert engine.containers == {}


@pytest.mark.asyncio
async def test_destroy_unknown_container(context):
    """Test destroying a container that does not exist."""
    with pytest.raises(ContainerNotFoundError):
        await destroy_container(ContainerIdInput(container_id="c_missing"))


@pytest.mark.asyncio
async def test_status_tools(context):
    """Test agent status, status board and metrics tools."""
    await execute_task(ExecuteTaskInput(commands=["echo hi"]))
    await context.event_bus.drain()

    status = await agent_status()
    assert status.enabled is True
    assert status.agent["metrics"]["tasks_completed"] == 1
    assert status.registered_containers == 0

    board = await active_agents()
    assert any(entry["type"] == "task" for entry in board.entries)

    exported = await metrics()
    assert "taskbox_tasks_total" in exported.metrics

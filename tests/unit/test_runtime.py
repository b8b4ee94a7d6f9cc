"""Tests for the runtime context."""

import pytest

from taskbox.managers.event_bus import EventType
from taskbox.models.tasks import TaskSpec
from taskbox.runtime import TaskboxContext
from taskbox.utils.exceptions import AgentShutdownError, EngineUnavailableError


@pytest.fixture
def context(settings, engine, event_bus, metrics):
    """Context over the fake engine."""
    return TaskboxContext(settings=settings, engine=engine, event_bus=event_bus, metrics=metrics)


@pytest.mark.asyncio
async def test_init_enables_execution(context, event_bus):
    """Test that a reachable engine enables task execution."""
    await context.init()

    assert context.enabled is True
    assert context.engine_version == "24.0.0"
    ready = event_bus.history(EventType.SYSTEM_READY)
    assert len(ready) == 1
    assert ready[0].data["enabled"] is True


@pytest.mark.asyncio
async def test_init_is_idempotent(context, engine, event_bus):
    """Test that a second init does nothing."""
    await context.init()
    await context.init()

    assert engine.operations().count("ping") == 1
    assert len(event_bus.history(EventType.SYSTEM_READY)) == 1


@pytest.mark.asyncio
async def test_init_with_unavailable_engine(context, engine):
    """Test that an unreachable engine disables execution instead of raising."""
    engine.available = False

    await context.init()

    assert context.enabled is False
    with pytest.raises(EngineUnavailableError):
        await context.agent.execute_task(TaskSpec(commands=["echo hi"]))
    assert "run" not in engine.operations()


@pytest.mark.asyncio
async def test_observers_follow_events(context, event_bus):
    """Test that the status board and audit logger are attached on init."""
    await context.init()

    assert event_bus.subscriber_count(EventType.CONTAINER_CREATED) >= 2

    record = await context.agent.execute_task(TaskSpec(commands=["echo hi"]))
    await event_bus.drain()

    assert record.status.value == "completed"
    entry = context.status_board.get(f"task-{record.id}")
    assert entry is not None
    assert entry.status == "completed"


@pytest.mark.asyncio
async def test_shutdown_destroys_containers(context, engine, event_bus):
    """Test that shutdown tears down standalone containers and closes the engine."""
    await context.init()
    instance = await context.manager.create_container()

    await context.shutdown()

    assert context.manager.get_container(instance.id) is None
    assert engine.containers == {}
    assert engine.closed is True
    assert context.enabled is False
    assert event_bus.subscriber_count() == 0
    assert len(event_bus.history(EventType.SYSTEM_SHUTDOWN)) == 1

    with pytest.raises(AgentShutdownError):
        await context.agent.execute_task(TaskSpec(commands=["echo hi"]))


@pytest.mark.asyncio
async def test_shutdown_is_idempotent(context, event_bus):
    """Test that a second shutdown does nothing."""
    await context.init()

    await context.shutdown()
    await context.shutdown()

    assert len(event_bus.history(EventType.SYSTEM_SHUTDOWN)) == 1


@pytest.mark.asyncio
async def test_get_status(context):
    """Test the status summary."""
    await context.init()
    await context.manager.create_container()

    status = context.get_status()

    assert status["enabled"] is True
    assert status["engine"] == "fake"
    assert len(status["containers"]) == 1
    assert status["agent"]["status"] == "idle"
    assert status["settings"]["max_concurrent_tasks"] == 3

    await context.shutdown()


@pytest.mark.asyncio
async def test_async_context_manager(settings, engine):
    """Test using the context with async with."""
    async with TaskboxContext(settings=settings, engine=engine) as context:
        assert context.enabled is True
        record = await context.agent.run_custom_task("greet", ["echo hello"])
        assert record.results[0].stdout == "hello\n"

    assert engine.closed is True


def test_contexts_are_independent(settings):
    """Test that two contexts share no components."""
    first = TaskboxContext(settings=settings, engine=None)
    second = TaskboxContext(settings=settings, engine=None)

    assert first.event_bus is not second.event_bus
    assert first.manager is not second.manager
    assert first.metrics.registry is not second.metrics.registry

"""Property-based tests for command results and agent metrics."""

import pytest
from hypothesis import HealthCheck, given, settings as hypothesis_settings, strategies as st

from taskbox.config import Settings
from taskbox.managers.container_manager import ContainerManager
from taskbox.managers.event_bus import EventBus
from taskbox.managers.task_agent import TaskAgent
from taskbox.models.tasks import AgentMetrics, TaskSpec

commands = st.lists(
    st.one_of(
        st.from_regex(r"echo [a-z]{1,8}", fullmatch=True),
        st.just("false"),
        st.integers(min_value=1, max_value=9).map(lambda n: f"exit {n}"),
    ),
    max_size=8,
)


def make_agent(engine_factory, halt_on_error: bool = False):
    engine = engine_factory()
    config = Settings(_env_file=None, command_timeout_s=5, halt_on_error=halt_on_error)
    bus = EventBus()
    manager = ContainerManager(engine, bus, settings=config)
    return engine, TaskAgent(manager, bus, settings=config)


@pytest.mark.property
@pytest.mark.asyncio
@given(commands)
@hypothesis_settings(suppress_health_check=[HealthCheck.function_scoped_fixture], max_examples=25)
async def test_one_result_per_command_in_order(engine_factory, cmds):
    """Property: a task yields exactly one result per command, in submission order."""
    engine, agent = make_agent(engine_factory)

    record = await agent.execute_task(TaskSpec(commands=cmds))

    assert [r.command for r in record.results] == cmds
    assert [r.success for r in record.results] == [c.startswith("echo ") for c in cmds]
    assert engine.exec_commands() == cmds
    assert engine.containers == {}


@pytest.mark.property
@pytest.mark.asyncio
@given(commands)
@hypothesis_settings(suppress_health_check=[HealthCheck.function_scoped_fixture], max_examples=25)
async def test_halt_on_error_skips_the_rest(engine_factory, cmds):
    """Property: with halt-on-error nothing runs after the first failure."""
    engine, agent = make_agent(engine_factory, halt_on_error=True)

    record = await agent.execute_task(TaskSpec(commands=cmds))

    assert len(record.results) == len(cmds)
    failed = [i for i, c in enumerate(cmds) if not c.startswith("echo ")]
    ran = cmds[: failed[0] + 1] if failed else cmds
    assert engine.exec_commands() == ran
    assert all(r.skipped for r in record.results[len(ran):])
    assert record.status.value == ("failed" if failed else "completed")


@pytest.mark.property
@given(st.lists(st.one_of(st.none(), st.floats(min_value=0, max_value=3600)), max_size=50))
def test_average_duration_matches_totals(outcomes):
    """Property: the average duration is always total time over completed tasks."""
    metrics = AgentMetrics()

    for duration in outcomes:
        if duration is None:
            metrics.record_failed()
        else:
            metrics.record_completed(duration)

    completed = [d for d in outcomes if d is not None]
    assert metrics.tasks_completed == len(completed)
    assert metrics.tasks_failed == len(outcomes) - len(completed)
    if completed:
        assert metrics.average_task_duration == pytest.approx(
            metrics.total_execution_time / metrics.tasks_completed
        )
    else:
        assert metrics.average_task_duration == 0

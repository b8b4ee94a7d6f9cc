"""Tests for StatusBoard."""

import asyncio

import pytest

from taskbox.managers.event_bus import EventBus
from taskbox.managers.status_board import MAX_ENTRY_LOGS, StatusBoard
from taskbox.models.tasks import TaskSpec


def test_update_and_remove():
    """Test creating, updating and removing entries."""
    board = StatusBoard()

    board.update_status("vm-1", {"name": "box", "type": "container", "status": "active"})
    board.update_status("vm-1", {"progress": 50, "unknown_field": "ignored"})

    entry = board.get("vm-1")
    assert entry.name == "box"
    assert entry.status == "active"
    assert entry.progress == 50
    assert not hasattr(entry, "unknown_field")

    board.remove_agent("vm-1")
    board.remove_agent("vm-1")
    assert board.list_active() == []


def test_entry_timestamps_are_utc():
    """Test that entries carry timezone-aware timestamps."""
    board = StatusBoard()
    board.update_status("vm-1", {"status": "active"})
    board.append_log("vm-1", "started")

    entry = board.get("vm-1")
    assert entry.start_time.tzinfo is not None
    assert entry.last_update.tzinfo is not None
    assert entry.last_update >= entry.start_time


def test_append_log_is_bounded_and_timestamped():
    """Test that log lines are timestamped and capped."""
    board = StatusBoard()
    board.update_status("task-1", {"type": "task"})

    for i in range(MAX_ENTRY_LOGS + 20):
        board.append_log("task-1", f"line {i}")
    board.append_log("task-missing", "ignored")

    logs = list(board.get("task-1").logs)
    assert len(logs) == MAX_ENTRY_LOGS
    assert logs[-1].endswith(f"line {MAX_ENTRY_LOGS + 19}")
    assert logs[-1].startswith("[")
    assert board.get("task-missing") is None


@pytest.mark.asyncio
async def test_board_follows_task_lifecycle(agent, event_bus):
    """Test that the board reflects containers and tasks from bus events."""
    board = StatusBoard(linger_completed_s=0.05, linger_failed_s=0.05)
    board.attach(event_bus)
    snapshots = []

    def on_started(event):
        snapshots.append({e.id: e.status for e in board.list_active()})

    event_bus.subscribe("task.started", on_started, priority=-1)

    record = await agent.execute_task(TaskSpec(description="demo", commands=["echo a", "false"]))
    await event_bus.drain()

    assert snapshots and f"task-{record.id}" in snapshots[0]
    assert snapshots[0][f"vm-{record.container_id}"] == "active"

    entry = board.get(f"task-{record.id}")
    assert entry.status == "error"
    assert entry.progress == 100
    assert any("echo a: ok" in line for line in entry.logs)
    assert any("false: failed (exit 1)" in line for line in entry.logs)
    assert board.get(f"vm-{record.container_id}") is None

    await asyncio.sleep(0.1)
    assert board.get(f"task-{record.id}") is None


@pytest.mark.asyncio
async def test_detach_stops_updates():
    """Test that a detached board no longer changes."""
    bus = EventBus()
    board = StatusBoard()
    board.attach(bus)
    board.detach()

    bus.publish("task.started", {"task_id": "t_1"})
    await bus.drain()

    assert board.list_active() == []

"""In-memory status board fed by lifecycle events."""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Protocol

from taskbox.managers.event_bus import Event, EventBus, EventType, Subscription
from taskbox.utils import get_logger

logger = get_logger(__name__)

MAX_ENTRY_LOGS = 100


@dataclass
class ActiveEntry:
    """One row on the status board: a container or a task."""

    id: str
    name: str
    type: str
    status: str
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_update: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    progress: int = 0
    current_task: Optional[str] = None
    container_id: Optional[str] = None
    logs: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_ENTRY_LOGS))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "status": self.status,
            "start_time": self.start_time.isoformat(),
            "last_update": self.last_update.isoformat(),
            "progress": self.progress,
            "current_task": self.current_task,
            "container_id": self.container_id,
            "logs": list(self.logs),
        }


class StatusSink(Protocol):
    """Presentation boundary receiving agent status updates."""

    def update_status(self, entry_id: str, partial: Dict[str, Any]) -> None: ...

    def remove_agent(self, entry_id: str) -> None: ...

    def append_log(self, entry_id: str, line: str) -> None: ...

    def list_active(self) -> List[ActiveEntry]: ...


class StatusBoard:
    """Passive StatusSink keeping active entries in memory."""

    def __init__(self, linger_completed_s: float = 5.0, linger_failed_s: float = 10.0):
        """
        Initialize status board.

        Args:
            linger_completed_s: Seconds a completed task stays listed
            linger_failed_s: Seconds a failed task stays listed
        """
        self.linger_completed_s = linger_completed_s
        self.linger_failed_s = linger_failed_s
        self._entries: Dict[str, ActiveEntry] = {}
        self._subscriptions: List[Subscription] = []
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def update_status(self, entry_id: str, partial: Dict[str, Any]) -> None:
        """
        Create or update an entry.

        Args:
            entry_id: Entry ID
            partial: Fields to set on the entry
        """
        entry = self._entries.get(entry_id)
        if entry is None:
            entry = ActiveEntry(
                id=entry_id,
                name=partial.get("name", entry_id),
                type=partial.get("type", "agent"),
                status=partial.get("status", "initializing"),
            )
            self._entries[entry_id] = entry

        for key, value in partial.items():
            if key in ("id", "logs"):
                continue
            if hasattr(entry, key):
                setattr(entry, key, value)
        entry.last_update = datetime.now(timezone.utc)

    def remove_agent(self, entry_id: str) -> None:
        """Drop an entry if present."""
        self._entries.pop(entry_id, None)
        timer = self._timers.pop(entry_id, None)
        if timer is not None:
            timer.cancel()

    def append_log(self, entry_id: str, line: str) -> None:
        """
        Append a timestamped log line to an entry.

        Lines for unknown entries are ignored.
        """
        entry = self._entries.get(entry_id)
        if entry is None:
            return
        now = datetime.now(timezone.utc)
        entry.logs.append(f"[{now.strftime('%H:%M:%S')}] {line}")
        entry.last_update = now

    def list_active(self) -> List[ActiveEntry]:
        """Entries currently on the board."""
        return list(self._entries.values())

    def get(self, entry_id: str) -> Optional[ActiveEntry]:
        """Look up one entry."""
        return self._entries.get(entry_id)

    def attach(self, bus: EventBus) -> None:
        """
        Subscribe the board to lifecycle events.

        Args:
            bus: Event bus to follow
        """
        handlers = {
            EventType.CONTAINER_CREATED: self._on_container_created,
            EventType.CONTAINER_DESTROYED: self._on_container_destroyed,
            EventType.TASK_STARTED: self._on_task_started,
            EventType.COMMAND_COMPLETED: self._on_command_completed,
            EventType.TASK_COMPLETED: self._on_task_finished,
            EventType.TASK_FAILED: self._on_task_finished,
        }
        for event_type, handler in handlers.items():
            self._subscriptions.append(bus.subscribe(event_type, handler))

    def detach(self) -> None:
        """Remove all bus subscriptions and pending removals."""
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    def _on_container_created(self, event: Event) -> None:
        container_id = event.data["container_id"]
        self.update_status(
            f"vm-{container_id}",
            {
                "name": event.data.get("name", container_id),
                "type": "container",
                "status": "active",
                "container_id": container_id,
                "current_task": event.data.get("task_id"),
            },
        )

    def _on_container_destroyed(self, event: Event) -> None:
        self.remove_agent(f"vm-{event.data['container_id']}")

    def _on_task_started(self, event: Event) -> None:
        task_id = event.data["task_id"]
        self.update_status(
            f"task-{task_id}",
            {
                "name": event.data.get("description") or task_id,
                "type": "task",
                "status": "working",
                "container_id": event.data.get("container_id"),
                "current_task": event.data.get("description"),
            },
        )

    def _on_command_completed(self, event: Event) -> None:
        task_id = event.data.get("task_id")
        if not task_id:
            return
        outcome = "ok" if event.data.get("success") else f"failed (exit {event.data.get('exit_code')})"
        self.append_log(f"task-{task_id}", f"{event.data.get('command')}: {outcome}")

    def _on_task_finished(self, event: Event) -> None:
        entry_id = f"task-{event.data['task_id']}"
        failed = event.type == EventType.TASK_FAILED.value
        self.update_status(
            entry_id,
            {
                "type": "task",
                "status": "error" if failed else "completed",
                "progress": 100,
                "container_id": event.data.get("container_id"),
            },
        )
        if event.data.get("error"):
            self.append_log(entry_id, f"error: {event.data['error']}")
        self._schedule_removal(entry_id, self.linger_failed_s if failed else self.linger_completed_s)

    def _schedule_removal(self, entry_id: str, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.remove_agent(entry_id)
            return

        previous = self._timers.pop(entry_id, None)
        if previous is not None:
            previous.cancel()
        self._timers[entry_id] = loop.call_later(delay, self._expire, entry_id)

    def _expire(self, entry_id: str) -> None:
        self._timers.pop(entry_id, None)
        self._entries.pop(entry_id, None)
        logger.debug("Status entry expired", extra={"entry_id": entry_id})

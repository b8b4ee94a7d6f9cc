"""Manager modules for business logic."""

from .container_manager import ContainerManager
from .event_bus import Event, EventBus, EventType, Subscription
from .shutdown_coordinator import ShutdownCoordinator, setup_signal_handlers
from .status_board import ActiveEntry, StatusBoard, StatusSink
from .task_agent import TaskAgent

__all__ = [
    "ActiveEntry",
    "ContainerManager",
    "Event",
    "EventBus",
    "EventType",
    "ShutdownCoordinator",
    "StatusBoard",
    "StatusSink",
    "Subscription",
    "TaskAgent",
    "setup_signal_handlers",
]

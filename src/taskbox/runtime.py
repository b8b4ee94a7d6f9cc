"""Runtime context wiring the engine, managers and observers together."""

from typing import Any, Dict, Optional

from taskbox.config import Settings, get_settings
from taskbox.engines import ContainerEngine, create_engine
from taskbox.managers.container_manager import ContainerManager
from taskbox.managers.event_bus import EventBus, EventType
from taskbox.managers.shutdown_coordinator import ShutdownCoordinator
from taskbox.managers.status_board import StatusBoard
from taskbox.managers.task_agent import TaskAgent
from taskbox.utils import get_logger, setup_logging
from taskbox.utils.audit_logger import AuditLogger
from taskbox.utils.exceptions import EngineError
from taskbox.utils.metrics_collector import MetricsCollector

logger = get_logger(__name__)


class TaskboxContext:
    """
    Owns one set of Taskbox components and their lifecycle.

    Components are created in the constructor and wired explicitly; nothing
    talks to the engine until ``init()`` is awaited. Several contexts can
    coexist in one process.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[ContainerEngine] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        """
        Initialize the context.

        Args:
            settings: Application settings
            engine: Container engine (built from settings if omitted)
            event_bus: Event bus (a fresh one if omitted)
            metrics: Prometheus collector (a fresh one if omitted)
        """
        self.settings = settings or get_settings()
        self.engine = engine or create_engine(self.settings)
        self.event_bus = event_bus or EventBus(history_size=self.settings.event_history_size)
        self.metrics = metrics or MetricsCollector()
        self.enabled = False
        self.engine_version: Optional[str] = None

        self.manager = ContainerManager(
            self.engine, self.event_bus, settings=self.settings, metrics=self.metrics
        )
        self.agent = TaskAgent(
            self.manager,
            self.event_bus,
            settings=self.settings,
            metrics=self.metrics,
            is_enabled=lambda: self.enabled,
        )
        self.status_board = StatusBoard(
            linger_completed_s=self.settings.status_linger_completed_s,
            linger_failed_s=self.settings.status_linger_failed_s,
        )
        self.audit_logger = AuditLogger()
        self.shutdown_coordinator = ShutdownCoordinator(self.agent, self.manager, self.settings)

        self._initialized = False
        self._closed = False

    async def init(self, configure_logging: bool = False) -> "TaskboxContext":
        """
        Check the engine and start observing events.

        An unreachable engine does not raise: the context is marked disabled
        and tasks submitted to it fail with EngineUnavailableError.

        Args:
            configure_logging: Configure logging from settings first

        Returns:
            The context itself
        """
        if self._initialized:
            return self
        if configure_logging:
            setup_logging(log_level=self.settings.log_level, log_format=self.settings.log_format)

        try:
            self.engine_version = await self.engine.ping()
            self.enabled = True
            logger.info(
                "Container engine available",
                extra={"engine": self.engine.name, "version": self.engine_version},
            )
        except EngineError as e:
            self.enabled = False
            logger.warning(
                "Container engine unavailable, task execution disabled",
                extra={"engine": self.engine.name, "error": str(e)},
            )

        self.status_board.attach(self.event_bus)
        self.audit_logger.attach(self.event_bus)
        self._initialized = True

        self.event_bus.publish(
            EventType.SYSTEM_READY,
            {"enabled": self.enabled, "engine": self.engine.name, "version": self.engine_version},
        )
        return self

    async def shutdown(self) -> None:
        """Drain tasks, destroy containers and release the engine."""
        if self._closed:
            return
        self._closed = True

        logger.info("Shutting down Taskbox context")
        self.event_bus.publish(EventType.SYSTEM_SHUTDOWN, {"enabled": self.enabled})

        await self.shutdown_coordinator.initiate_shutdown()
        await self.event_bus.drain()

        self.status_board.detach()
        self.audit_logger.detach()
        self.enabled = False
        await self.engine.close()
        logger.info("Taskbox context stopped")

    def get_status(self) -> Dict[str, Any]:
        """
        Summary of the context.

        Returns:
            Enabled flag, registered containers, agent status and key settings
        """
        return {
            "enabled": self.enabled,
            "engine": self.engine.name,
            "engine_version": self.engine_version,
            "containers": [instance.to_dict() for instance in self.manager.list_containers()],
            "agent": self.agent.get_status(),
            "settings": {
                "default_image": self.settings.default_image,
                "default_memory": self.settings.default_memory,
                "default_cpu": self.settings.default_cpu,
                "max_concurrent_tasks": self.settings.max_concurrent_tasks,
                "command_timeout_s": self.settings.command_timeout_s,
                "task_timeout_s": self.settings.task_timeout_s,
                "halt_on_error": self.settings.halt_on_error,
            },
        }

    async def __aenter__(self) -> "TaskboxContext":
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

"""Shutdown coordinator for graceful server shutdown."""

import asyncio
import signal
from typing import Callable, Optional

from taskbox.config import Settings, get_settings
from taskbox.managers.container_manager import ContainerManager
from taskbox.managers.task_agent import TaskAgent
from taskbox.utils import get_logger

logger = get_logger(__name__)


class ShutdownCoordinator:
    """Coordinator for graceful server shutdown."""

    def __init__(
        self,
        agent: TaskAgent,
        manager: ContainerManager,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize shutdown coordinator.

        Args:
            agent: Task agent whose tasks are drained
            manager: Container manager whose containers are destroyed
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self.agent = agent
        self.manager = manager
        self._shutdown_initiated = False
        self._shutdown_event = asyncio.Event()

    def is_shutting_down(self) -> bool:
        """
        Check if shutdown has been initiated.

        Returns:
            True if shutdown is in progress
        """
        return self._shutdown_initiated

    async def initiate_shutdown(self) -> None:
        """
        Initiate graceful shutdown sequence.

        This method:
        1. Drains in-flight tasks up to TASKBOX_DRAIN_GRACE_S
        2. Cancels tasks still running after the grace period
        3. Shuts the agent down, destroying its containers
        4. Destroys any container still registered with the manager
        """
        if self._shutdown_initiated:
            logger.warning("Shutdown already initiated")
            return

        self._shutdown_initiated = True
        logger.info("Initiating graceful shutdown")

        try:
            await self._drain_tasks()
            await self.agent.shutdown()
            await self._destroy_remaining_containers()
            logger.info("Graceful shutdown completed")
        except Exception as e:
            logger.error("Error during shutdown", extra={"error": str(e)})
        finally:
            self._shutdown_event.set()

    async def _drain_tasks(self) -> None:
        """
        Drain in-flight tasks with timeout.

        Tasks still running after TASKBOX_DRAIN_GRACE_S are cancelled; their
        containers are torn down by the agent.
        """
        grace_period = self.settings.drain_grace_s
        logger.info(
            "Draining active tasks",
            extra={"grace_period_s": grace_period, "active_tasks": len(self.agent.get_active_tasks())},
        )

        if await self.agent.wait_idle(timeout=grace_period):
            logger.info("Active tasks drained")
            return

        cancelled = self.agent.cancel_all()
        logger.warning(
            "Drain timeout reached, cancelling tasks",
            extra={"grace_period_s": grace_period, "cancelled": cancelled},
        )
        await self.agent.wait_idle()

    async def _destroy_remaining_containers(self) -> None:
        """Destroy containers created outside any task."""
        remaining = self.manager.list_containers()
        destroyed_count = 0
        for instance in remaining:
            try:
                await self.manager.destroy_container(instance.id)
                destroyed_count += 1
            except Exception as e:
                logger.error(
                    "Failed to destroy container",
                    extra={"container_id": instance.id, "error": str(e)},
                )

        logger.info("Remaining containers destroyed", extra={"count": destroyed_count})

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown to complete."""
        await self._shutdown_event.wait()


def setup_signal_handlers(shutdown_handler: Callable[[], None]) -> None:
    """
    Set up signal handlers for graceful shutdown.

    Args:
        shutdown_handler: Function to call on SIGTERM/SIGINT
    """

    def signal_handler(signum, frame):
        """Handle shutdown signals."""
        sig_name = signal.Signals(signum).name
        logger.info(f"Received {sig_name} signal, initiating shutdown")
        shutdown_handler()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("Signal handlers registered for graceful shutdown")

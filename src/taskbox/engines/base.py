"""Abstract container engine control surface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from taskbox.models.containers import ContainerConfig

KEEP_ALIVE_COMMAND = ["tail", "-f", "/dev/null"]

LABEL_MANAGED = "com.taskbox.managed"
LABEL_CONTAINER_ID = "com.taskbox.container_id"


@dataclass
class ExecOutcome:
    """Exit code and captured output of a command run inside a container."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""


def container_labels(config: ContainerConfig) -> Dict[str, str]:
    """Labels attached to every container started by Taskbox."""
    return {
        LABEL_MANAGED: "true",
        LABEL_CONTAINER_ID: config.id,
    }


class ContainerEngine(ABC):
    """
    Control surface of a container engine.

    Every method is a suspension point: implementations must not block the
    event loop while the engine works.
    """

    name: str = "engine"

    @abstractmethod
    async def ping(self) -> str:
        """
        Check that the engine is reachable.

        Returns:
            Engine version string

        Raises:
            EngineUnavailableError: If the engine cannot be reached
        """

    @abstractmethod
    async def run(self, config: ContainerConfig) -> str:
        """
        Start a detached container that stays alive until stopped.

        Returns:
            Engine-assigned runtime identifier
        """

    @abstractmethod
    async def inspect_address(self, runtime_id: str) -> str:
        """Return the container's network address (empty if it has none)."""

    @abstractmethod
    async def exec(
        self,
        runtime_id: str,
        argv: List[str],
        workdir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout_s: Optional[float] = None,
    ) -> ExecOutcome:
        """
        Run an argument vector inside the container.

        A non-zero exit code is returned, not raised.

        Raises:
            EngineNotFoundError: If the container no longer exists
            EngineTimeoutError: If the command exceeds timeout_s
        """

    @abstractmethod
    async def logs(self, runtime_id: str) -> str:
        """Return the container's accumulated output."""

    @abstractmethod
    async def stop(self, runtime_id: str, timeout_s: int = 10) -> None:
        """Stop the container, killing it after timeout_s."""

    @abstractmethod
    async def remove(self, runtime_id: str, force: bool = False) -> None:
        """Remove the container."""

    async def close(self) -> None:
        """Release engine resources."""
        return None

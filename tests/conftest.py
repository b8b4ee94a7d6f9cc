"""Test configuration and fixtures."""

import asyncio
import re
import shutil
from typing import Dict, List, Optional, Tuple

import pytest

from taskbox.config import Settings
from taskbox.engines.base import ContainerEngine, ExecOutcome
from taskbox.managers.container_manager import ContainerManager
from taskbox.managers.event_bus import EventBus
from taskbox.managers.task_agent import TaskAgent
from taskbox.models.containers import ContainerConfig
from taskbox.utils.exceptions import (
    EngineNotFoundError,
    EngineTimeoutError,
    EngineUnavailableError,
)
from taskbox.utils.metrics_collector import MetricsCollector

_SLEEP = re.compile(r"^sleep\s+([0-9.]+)$")
_EXIT = re.compile(r"^exit\s+([0-9]+)$")


class FakeEngine(ContainerEngine):
    """
    Scripted in-memory engine recording every call.

    Shell commands are interpreted loosely: ``echo X`` prints X, ``false`` and
    ``exit N`` fail, ``sleep N`` waits (and honours the timeout). Anything else
    succeeds silently unless scripted through ``exec_results``.
    """

    name = "fake"

    def __init__(self) -> None:
        self.calls: List[Tuple] = []
        self.containers: Dict[str, ContainerConfig] = {}
        self.stopped: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self.exec_results: Dict[str, ExecOutcome] = {}
        self.holds: Dict[str, asyncio.Event] = {}
        self.address = "172.17.0.2"
        self.available = True
        self.closed = False
        self._counter = 0

    def fail(self, operation: str, error: Exception) -> None:
        """Make every call of an operation raise."""
        self.failures[operation] = error

    def hold(self, operation: str) -> asyncio.Event:
        """Suspend every call of an operation until the returned event is set."""
        gate = asyncio.Event()
        self.holds[operation] = gate
        return gate

    def operations(self) -> List[str]:
        """Names of the operations called, in order."""
        return [call[0] for call in self.calls]

    def exec_commands(self) -> List[str]:
        """Shell commands executed, excluding bootstrap and setup steps."""
        return [call[2][-1] for call in self.calls if call[0] == "exec" and call[2][1:2] == ["-c"]]

    def _check(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    async def _wait(self, operation: str) -> None:
        gate = self.holds.get(operation)
        if gate is not None:
            await gate.wait()

    async def ping(self) -> str:
        self.calls.append(("ping",))
        if not self.available:
            raise EngineUnavailableError()
        return "24.0.0"

    async def run(self, config: ContainerConfig) -> str:
        self.calls.append(("run", config))
        self._check("run")
        self._counter += 1
        runtime_id = f"rt{self._counter:04d}"
        self.containers[runtime_id] = config
        return runtime_id

    async def inspect_address(self, runtime_id: str) -> str:
        self.calls.append(("inspect_address", runtime_id))
        self._check("inspect_address")
        return self.address

    async def exec(
        self,
        runtime_id: str,
        argv: List[str],
        workdir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout_s: Optional[float] = None,
    ) -> ExecOutcome:
        self.calls.append(("exec", runtime_id, list(argv), workdir, timeout_s))
        self._check("exec")
        if runtime_id not in self.containers:
            raise EngineNotFoundError(runtime_id)

        key = argv[-1] if argv[1:2] == ["-c"] else " ".join(argv)
        if key in self.exec_results:
            return self.exec_results[key]

        sleep = _SLEEP.match(key)
        if sleep:
            seconds = float(sleep.group(1))
            if timeout_s is not None and seconds > timeout_s:
                await asyncio.sleep(timeout_s)
                raise EngineTimeoutError(argv, timeout_s)
            await asyncio.sleep(seconds)
            return ExecOutcome(exit_code=0)

        if key.startswith("echo "):
            return ExecOutcome(exit_code=0, stdout=key[5:] + "\n")
        if key == "false":
            return ExecOutcome(exit_code=1)
        exit_match = _EXIT.match(key)
        if exit_match:
            return ExecOutcome(exit_code=int(exit_match.group(1)), stderr="exited\n")
        return ExecOutcome(exit_code=0)

    async def logs(self, runtime_id: str) -> str:
        self.calls.append(("logs", runtime_id))
        self._check("logs")
        if runtime_id not in self.containers:
            raise EngineNotFoundError(runtime_id)
        return "first line\n\nsecond line\n"

    async def stop(self, runtime_id: str, timeout_s: int = 10) -> None:
        self.calls.append(("stop", runtime_id, timeout_s))
        self._check("stop")
        await self._wait("stop")
        if runtime_id not in self.containers:
            raise EngineNotFoundError(runtime_id)
        self.stopped.append(runtime_id)

    async def remove(self, runtime_id: str, force: bool = False) -> None:
        self.calls.append(("remove", runtime_id, force))
        self._check("remove")
        if runtime_id not in self.containers:
            raise EngineNotFoundError(runtime_id)
        del self.containers[runtime_id]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings():
    """Settings tuned for fast tests."""
    return Settings(
        _env_file=None,
        command_timeout_s=5,
        task_timeout_s=30,
        max_concurrent_tasks=3,
        status_linger_completed_s=0.05,
        status_linger_failed_s=0.05,
        drain_grace_s=1,
        halt_on_error=False,
    )


@pytest.fixture
def engine():
    """Scripted fake engine."""
    return FakeEngine()


@pytest.fixture
def engine_factory():
    """Factory for fresh fake engines, for tests that need several."""
    return FakeEngine


@pytest.fixture
def event_bus():
    """Fresh event bus."""
    return EventBus()


@pytest.fixture
def metrics():
    """Metrics collector with a private registry."""
    return MetricsCollector()


@pytest.fixture
def manager(engine, event_bus, settings, metrics):
    """Container manager over the fake engine."""
    return ContainerManager(engine, event_bus, settings=settings, metrics=metrics)


@pytest.fixture
def agent(manager, event_bus, settings, metrics):
    """Task agent over the fake engine."""
    return TaskAgent(manager, event_bus, settings=settings, metrics=metrics)


@pytest.fixture(scope="session")
def docker_available():
    """Check if a Docker engine binary is available."""
    return shutil.which("docker") is not None


@pytest.fixture
def require_docker(docker_available):
    """Skip test if Docker is not available."""
    if not docker_available:
        pytest.skip("Docker engine not available - skipping integration test")

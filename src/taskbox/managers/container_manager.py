"""Container lifecycle manager: create, run commands in, and destroy containers."""

import asyncio
import shlex
import time
from collections import deque
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from taskbox.config import Settings, get_settings
from taskbox.engines.base import ContainerEngine
from taskbox.managers.event_bus import EventBus, EventType
from taskbox.models.containers import (
    ContainerConfig,
    ContainerConfigOverrides,
    ContainerInstance,
    ContainerStatus,
)
from taskbox.models.tasks import CommandResult
from taskbox.utils import get_logger
from taskbox.utils.exceptions import (
    AddressResolutionError,
    ContainerCreationError,
    ContainerNotFoundError,
    ContainerNotRunningError,
    EngineError,
    EngineNotFoundError,
    EngineTimeoutError,
    UnsafeValueError,
)
from taskbox.utils.metrics_collector import MetricsCollector
from taskbox.utils.validation import validate_command

logger = get_logger(__name__)

DEFAULT_ENVIRONMENT = {
    "DEBIAN_FRONTEND": "noninteractive",
    "TERM": "xterm-256color",
}

BOOTSTRAP_PACKAGES = ["git", "curl", "wget", "unzip", "software-properties-common"]


def bootstrap_steps(working_directory: str) -> List[List[str]]:
    """Argument vectors run once in every new container."""
    return [
        ["apt-get", "update"],
        ["apt-get", "install", "-y", *BOOTSTRAP_PACKAGES],
        ["mkdir", "-p", working_directory],
        ["chmod", "755", working_directory],
    ]


class ContainerManager:
    """Manager for container lifecycle operations against a container engine."""

    def __init__(
        self,
        engine: ContainerEngine,
        event_bus: EventBus,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        """
        Initialize container manager.

        Args:
            engine: Container engine backend
            event_bus: Bus lifecycle events are published to
            settings: Application settings
            metrics: Optional Prometheus mirror
        """
        self.settings = settings or get_settings()
        self.engine = engine
        self.event_bus = event_bus
        self.metrics = metrics
        self._instances: Dict[str, ContainerInstance] = {}

    def build_config(self, overrides: Optional[ContainerConfigOverrides] = None) -> ContainerConfig:
        """
        Merge caller overrides onto the default configuration.

        Args:
            overrides: Values replacing defaults; environment entries are merged

        Returns:
            Configuration with a freshly generated identity
        """
        overrides = overrides or ContainerConfigOverrides()
        container_id = f"c_{uuid4()}"
        base_name = overrides.name or self.settings.container_name_prefix

        environment = dict(DEFAULT_ENVIRONMENT)
        environment.update(overrides.environment or {})

        return ContainerConfig(
            id=container_id,
            name=f"{base_name}-{container_id[2:14]}",
            image=overrides.image or self.settings.default_image,
            memory=overrides.memory or self.settings.default_memory,
            cpu=overrides.cpu or self.settings.default_cpu,
            ports=tuple(
                overrides.ports if overrides.ports is not None else self.settings.default_ports_list
            ),
            volumes=tuple(overrides.volumes or ()),
            environment=environment,
            working_directory=overrides.working_directory or self.settings.working_directory,
            auto_remove=(
                overrides.auto_remove
                if overrides.auto_remove is not None
                else self.settings.auto_remove
            ),
        )

    async def create_container(
        self,
        overrides: Optional[ContainerConfigOverrides] = None,
        *,
        task_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> ContainerInstance:
        """
        Create, start and bootstrap a container.

        The instance is registered before the engine is called. On failure it
        stays registered in status ``error`` and must be destroyed by the caller.

        Args:
            overrides: Configuration overrides
            task_id: Owning task, if any
            agent_id: Owning agent, if any

        Returns:
            Running container instance

        Raises:
            EngineError: If the engine refuses to start or inspect the container
            ContainerCreationError: If the bootstrap sequence fails
        """
        config = self.build_config(overrides)
        instance = ContainerInstance(
            id=config.id,
            config=config,
            logs=deque(maxlen=self.settings.max_log_lines),
            task_id=task_id,
            agent_id=agent_id,
        )
        self._instances[instance.id] = instance
        self.event_bus.publish(
            EventType.CONTAINER_CREATING,
            {"container_id": instance.id, "name": config.name, "task_id": task_id},
        )

        logger.info(
            "Creating container",
            extra={
                "container_id": instance.id,
                "container_name": config.name,
                "image": config.image,
                "memory": config.memory,
                "cpu": config.cpu,
            },
        )

        try:
            runtime_id = await self.engine.run(config)
            instance.runtime_id = runtime_id
            instance.log(f"Container started: {runtime_id}")

            address = await self.engine.inspect_address(runtime_id)
            if not address:
                raise AddressResolutionError(runtime_id)
            instance.ip_address = address

            if self.settings.bootstrap_enabled:
                await self._bootstrap(instance)

            instance.status = ContainerStatus.RUNNING
            instance.start_time = datetime.now(timezone.utc)

        except (Exception, asyncio.CancelledError) as e:
            instance.status = ContainerStatus.ERROR
            instance.log(f"Error creating container: {e}")
            logger.error(
                "Failed to create container",
                extra={"container_id": instance.id, "runtime_id": instance.runtime_id, "error": str(e)},
            )
            self.event_bus.publish(
                EventType.CONTAINER_ERROR,
                {"container_id": instance.id, "task_id": task_id, "error": str(e)},
            )
            raise

        logger.info(
            "Container created",
            extra={
                "container_id": instance.id,
                "runtime_id": instance.runtime_id,
                "ip_address": instance.ip_address,
            },
        )
        self.event_bus.publish(
            EventType.CONTAINER_CREATED,
            {
                "container_id": instance.id,
                "name": config.name,
                "runtime_id": instance.runtime_id,
                "ip_address": instance.ip_address,
                "task_id": task_id,
                "agent_id": agent_id,
            },
        )
        if self.metrics:
            self.metrics.record_container_created(config.image)
            self.metrics.set_active_containers(len(self._instances))
        return instance

    async def _bootstrap(self, instance: ContainerInstance) -> None:
        """Refresh the package index, install base tooling and prepare the workspace."""
        for argv in bootstrap_steps(instance.config.working_directory):
            display = shlex.join(argv)
            instance.log(f"$ {display}")
            outcome = await self.engine.exec(
                instance.runtime_id,
                argv,
                timeout_s=self.settings.command_timeout_s,
            )
            if outcome.exit_code != 0:
                raise ContainerCreationError(
                    instance.id,
                    f"'{display}' exited with code {outcome.exit_code}: {outcome.stderr.strip()}",
                )

    async def execute_commands(
        self,
        container_id: str,
        commands: List[str],
        *,
        halt_on_error: Optional[bool] = None,
        timeout_s: Optional[float] = None,
        deadline: Optional[float] = None,
    ) -> List[CommandResult]:
        """
        Run shell commands one after another inside a container.

        Command failures are returned as data, never raised. Exactly one result
        is returned per input command, in input order.

        Args:
            container_id: Container ID
            commands: Shell commands
            halt_on_error: Skip the remainder after a failure (defaults to settings)
            timeout_s: Per-command timeout (defaults to settings)
            deadline: Absolute event-loop time after which nothing more runs

        Returns:
            List of command results

        Raises:
            ContainerNotFoundError: If the container is not registered
            ContainerNotRunningError: If the container is not running
        """
        instance = self._require_running(container_id)
        halt = self.settings.halt_on_error if halt_on_error is None else halt_on_error
        per_command = timeout_s if timeout_s is not None else self.settings.command_timeout_s
        loop = asyncio.get_running_loop()

        results: List[CommandResult] = []
        stop_reason: Optional[str] = None

        for command in commands:
            if stop_reason is not None:
                results.append(self._not_run(command, stop_reason))
                continue

            try:
                validate_command(command)
            except UnsafeValueError as e:
                results.append(CommandResult(command=command, error=str(e)))
                if halt:
                    stop_reason = "halted"
                continue

            budget = per_command
            limited_by_deadline = False
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    stop_reason = "deadline"
                    results.append(self._not_run(command, stop_reason))
                    continue
                if remaining < budget:
                    budget = remaining
                    limited_by_deadline = True

            result = await self._execute(
                instance, [self.settings.command_shell, "-c", command], command, budget
            )
            results.append(result)

            if result.timed_out and limited_by_deadline:
                stop_reason = "deadline"
            elif not result.success and halt:
                stop_reason = "halted"

        logger.info(
            "Commands executed",
            extra={
                "container_id": container_id,
                "count": len(results),
                "failed": sum(1 for r in results if not r.success),
            },
        )
        return results

    async def run_step(
        self,
        container_id: str,
        argv: List[str],
        *,
        timeout_s: Optional[float] = None,
        workdir: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a single argument vector inside a container without a shell.

        Args:
            container_id: Container ID
            argv: Program and arguments
            timeout_s: Timeout (defaults to the per-command setting)
            workdir: Working directory (defaults to the container's)

        Returns:
            CommandResult for the step
        """
        instance = self._require_running(container_id)
        budget = timeout_s if timeout_s is not None else self.settings.command_timeout_s
        return await self._execute(instance, argv, shlex.join(argv), budget, workdir=workdir)

    async def _execute(
        self,
        instance: ContainerInstance,
        argv: List[str],
        display: str,
        timeout_s: float,
        workdir: Optional[str] = None,
    ) -> CommandResult:
        instance.log(f"$ {display}")
        started = time.monotonic()

        try:
            outcome = await self.engine.exec(
                instance.runtime_id,
                argv,
                workdir=workdir or instance.config.working_directory,
                timeout_s=timeout_s,
            )
            result = CommandResult(
                command=display,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                success=outcome.exit_code == 0,
                exit_code=outcome.exit_code,
            )
            if not result.success:
                result.error = f"Command exited with code {outcome.exit_code}"
        except EngineTimeoutError as e:
            result = CommandResult(command=display, timed_out=True, error=str(e))
        except EngineError as e:
            result = CommandResult(command=display, error=str(e))

        elapsed = time.monotonic() - started
        result.duration_ms = int(elapsed * 1000)
        instance.log(
            f"[{'ok' if result.success else 'failed'}] exit={result.exit_code} "
            f"({result.duration_ms} ms)"
        )

        if self.metrics:
            self.metrics.record_command(result.success, elapsed)
        self.event_bus.publish(
            EventType.COMMAND_COMPLETED,
            {
                "container_id": instance.id,
                "task_id": instance.task_id,
                "command": display,
                "success": result.success,
                "exit_code": result.exit_code,
                "timed_out": result.timed_out,
            },
        )
        return result

    @staticmethod
    def _not_run(command: str, reason: str) -> CommandResult:
        if reason == "deadline":
            return CommandResult(
                command=command,
                timed_out=True,
                skipped=True,
                error="Deadline exceeded before the command started",
            )
        return CommandResult(
            command=command,
            skipped=True,
            error="Skipped after an earlier command failed",
        )

    def _require_running(self, container_id: str) -> ContainerInstance:
        instance = self._instances.get(container_id)
        if instance is None:
            raise ContainerNotFoundError(container_id)
        if instance.status != ContainerStatus.RUNNING:
            raise ContainerNotRunningError(container_id, instance.status.value)
        return instance

    async def destroy_container(self, container_id: str) -> None:
        """
        Stop and remove a container and drop it from the registry.

        Not idempotent: destroying an unregistered ID raises.

        Args:
            container_id: Container ID

        Raises:
            ContainerNotFoundError: If the container is not registered
            EngineError: If the engine fails to stop or remove it
        """
        instance = self._instances.get(container_id)
        if instance is None:
            raise ContainerNotFoundError(container_id)

        logger.info(
            "Destroying container",
            extra={"container_id": container_id, "runtime_id": instance.runtime_id},
        )

        if instance.runtime_id:
            try:
                await self.engine.stop(instance.runtime_id, timeout_s=self.settings.stop_timeout_s)
                instance.status = ContainerStatus.STOPPED
            except EngineNotFoundError:
                logger.info(
                    "Container already gone from engine",
                    extra={"container_id": container_id},
                )
            except EngineError as e:
                self._mark_teardown_error(instance, "stop", e)
                raise

            try:
                await self.engine.remove(instance.runtime_id, force=True)
            except EngineNotFoundError:
                # Auto-remove containers are reaped by the engine on stop
                logger.debug(
                    "Container already removed by engine",
                    extra={"container_id": container_id, "auto_remove": instance.config.auto_remove},
                )
            except EngineError as e:
                self._mark_teardown_error(instance, "remove", e)
                raise

        instance.status = ContainerStatus.DESTROYED
        instance.end_time = datetime.now(timezone.utc)
        self._instances.pop(container_id, None)

        logger.info("Container destroyed", extra={"container_id": container_id})
        self.event_bus.publish(
            EventType.CONTAINER_DESTROYED,
            {"container_id": container_id, "task_id": instance.task_id, "agent_id": instance.agent_id},
        )
        if self.metrics:
            self.metrics.record_container_destroyed()
            self.metrics.set_active_containers(len(self._instances))

    def _mark_teardown_error(self, instance: ContainerInstance, step: str, error: Exception) -> None:
        instance.status = ContainerStatus.ERROR
        instance.log(f"Error during {step}: {error}")
        logger.error(
            "Failed to destroy container",
            extra={"container_id": instance.id, "step": step, "error": str(error)},
        )

    async def get_logs(self, container_id: str) -> List[str]:
        """
        Retrieve the container's log lines.

        Falls back to the locally buffered lines if the engine cannot provide them.

        Args:
            container_id: Container ID

        Returns:
            Log lines (empty for unknown containers)
        """
        instance = self._instances.get(container_id)
        if instance is None:
            return []
        if not instance.runtime_id:
            return list(instance.logs)

        try:
            output = await self.engine.logs(instance.runtime_id)
        except EngineError as e:
            logger.warning(
                "Failed to read container logs, using local buffer",
                extra={"container_id": container_id, "error": str(e)},
            )
            return list(instance.logs)

        return [line for line in output.splitlines() if line.strip()]

    def get_container(self, container_id: str) -> Optional[ContainerInstance]:
        """
        Get a registered container.

        Args:
            container_id: Container ID

        Returns:
            ContainerInstance, or None if not registered
        """
        return self._instances.get(container_id)

    def list_containers(self) -> List[ContainerInstance]:
        """
        List registered containers.

        Returns:
            List of container instances
        """
        return list(self._instances.values())

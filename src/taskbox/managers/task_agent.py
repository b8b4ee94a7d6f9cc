"""Task agent binding each task to a fresh container for its whole lifetime."""

import asyncio
import inspect
from collections import OrderedDict, deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union
from uuid import uuid4

from taskbox.config import Settings, get_settings
from taskbox.managers.container_manager import ContainerManager
from taskbox.managers.event_bus import EventBus, EventType
from taskbox.models.containers import ContainerConfigOverrides, ContainerInstance, ContainerStatus
from taskbox.models.tasks import (
    AgentMetrics,
    CommandResult,
    TaskKind,
    TaskRecord,
    TaskRequirements,
    TaskSpec,
    TaskStatus,
)
from taskbox.utils import get_logger
from taskbox.utils.exceptions import (
    AgentShutdownError,
    ContainerNotFoundError,
    EngineUnavailableError,
    TaskNotFoundError,
    TaskSetupError,
    TaskTimeoutError,
)
from taskbox.utils.metrics_collector import MetricsCollector

logger = get_logger(__name__)

ANALYSIS_BRANCH = "feature/automated-analysis"
PULL_REQUEST_COMMAND = (
    'gh pr create --title "Automated Analysis Results" '
    '--body "Analysis completed by the Taskbox agent"'
)

RUNTIME_PACKAGES = {
    "python": ["python3", "python3-pip"],
    "node": ["nodejs", "npm"],
}

EDITOR_STEPS = [
    ["apt-get", "install", "-y", "gnupg"],
    [
        "sh",
        "-c",
        "wget -qO- https://packages.microsoft.com/keys/microsoft.asc "
        "| gpg --dearmor > /tmp/packages.microsoft.gpg",
    ],
    ["install", "-o", "root", "-g", "root", "-m", "644",
     "/tmp/packages.microsoft.gpg", "/etc/apt/trusted.gpg.d/"],
    [
        "sh",
        "-c",
        'echo "deb [arch=amd64,arm64,armhf signed-by=/etc/apt/trusted.gpg.d/packages.microsoft.gpg] '
        'https://packages.microsoft.com/repos/code stable main" > /etc/apt/sources.list.d/vscode.list',
    ],
    ["apt-get", "update"],
    ["apt-get", "install", "-y", "code"],
]

CompletionCallback = Callable[[TaskRecord], Union[None, Awaitable[None]]]


class TaskAgent:
    """
    Runs tasks, each in a dedicated container that is destroyed afterwards.

    A container is created per task, the task's setup steps and commands run
    inside it, and the container is torn down whatever the outcome. Task
    failures are reported in the returned record; only creation failures and
    unexpected errors propagate to the caller.
    """

    def __init__(
        self,
        manager: ContainerManager,
        event_bus: EventBus,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsCollector] = None,
        agent_id: str = "task-agent",
        is_enabled: Optional[Callable[[], bool]] = None,
    ) -> None:
        """
        Initialize task agent.

        Args:
            manager: Container lifecycle manager
            event_bus: Bus task events are published to
            settings: Application settings
            metrics: Optional Prometheus mirror
            agent_id: Identifier reported in events and status
            is_enabled: Returns False while the container engine is unusable
        """
        self.settings = settings or get_settings()
        self.manager = manager
        self.event_bus = event_bus
        self.prometheus = metrics
        self.agent_id = agent_id
        self.metrics = AgentMetrics()
        self.state = "idle"

        self._is_enabled = is_enabled or (lambda: True)
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_tasks)
        self._active_containers: Dict[str, ContainerInstance] = {}
        self._active_tasks: Dict[str, TaskRecord] = {}
        self._records: "OrderedDict[str, TaskRecord]" = OrderedDict()
        self._running: Dict[str, asyncio.Task] = {}
        self._cancel_requested: Set[str] = set()
        self._shutting_down = False

    def build_config(self, spec: TaskSpec) -> ContainerConfigOverrides:
        """
        Derive container overrides from a task's requirements.

        Args:
            spec: Task specification

        Returns:
            Overrides applied on top of the default container baseline
        """
        requirements = spec.requirements
        environment: Dict[str, str] = {}
        if requirements.runtimes:
            environment["NODE_ENV"] = "development"

        return ContainerConfigOverrides(
            memory=requirements.memory or self.settings.default_memory,
            cpu=requirements.cpu or self.settings.default_cpu,
            ports=self.settings.default_ports_list,
            environment=environment,
        )

    async def execute_task(
        self,
        spec: TaskSpec,
        *,
        on_complete: Optional[CompletionCallback] = None,
        timeout_s: Optional[float] = None,
    ) -> TaskRecord:
        """
        Run a task in a fresh container and tear the container down afterwards.

        Args:
            spec: Task specification
            on_complete: Callback invoked with the finished record
            timeout_s: Task deadline in seconds (defaults to settings)

        Returns:
            Finished TaskRecord; ``results`` holds one entry per command

        Raises:
            AgentShutdownError: If the agent no longer accepts tasks
            EngineUnavailableError: If the container engine is unusable
            EngineError: If the task's container could not be created
        """
        if self._shutting_down:
            raise AgentShutdownError(self.agent_id)
        if not self._is_enabled():
            raise EngineUnavailableError("Task execution is disabled: container engine is unavailable")

        record = TaskRecord(
            id=f"t_{uuid4()}",
            spec=spec,
            logs=deque(maxlen=self.settings.max_log_lines),
        )
        self._remember(record)

        runner = asyncio.create_task(
            self._run_when_admitted(record, on_complete, timeout_s),
            name=f"taskbox-{record.id}",
        )
        self._running[record.id] = runner

        try:
            return await runner
        except asyncio.CancelledError:
            if record.id in self._cancel_requested and runner.cancelled():
                logger.info("Task cancelled", extra={"task_id": record.id})
                return record
            raise
        finally:
            self._running.pop(record.id, None)
            self._cancel_requested.discard(record.id)

    async def _run_when_admitted(
        self,
        record: TaskRecord,
        on_complete: Optional[CompletionCallback],
        timeout_s: Optional[float],
    ) -> TaskRecord:
        try:
            async with self._semaphore:
                return await self._run(record, on_complete, timeout_s)
        except asyncio.CancelledError:
            if record.status == TaskStatus.PENDING:
                self._finish(record, error="Task cancelled before it started")
            raise

    async def _run(
        self,
        record: TaskRecord,
        on_complete: Optional[CompletionCallback],
        timeout_s: Optional[float],
    ) -> TaskRecord:
        loop = asyncio.get_running_loop()
        budget = timeout_s if timeout_s is not None else self.settings.task_timeout_s
        deadline = loop.time() + budget

        record.status = TaskStatus.RUNNING
        record.start_time = datetime.now(timezone.utc)
        self.state = "busy"

        logger.info(
            "Starting task",
            extra={
                "task_id": record.id,
                "kind": record.spec.kind.value,
                "description": record.spec.description,
                "commands": len(record.spec.commands),
            },
        )

        try:
            instance = await self.manager.create_container(
                self.build_config(record.spec),
                task_id=record.id,
                agent_id=self.agent_id,
            )
        except (Exception, asyncio.CancelledError) as e:
            logger.error(
                "Failed to create container for task",
                extra={"task_id": record.id, "error": str(e)},
            )
            await self._reap_errored(record.id)
            self._finish(record, error=f"Container creation failed: {e}")
            raise

        record.container_id = instance.id
        self._active_containers[instance.id] = instance
        self._active_tasks[record.id] = record
        self.metrics.containers_created += 1
        self.event_bus.publish(
            EventType.AGENT_CONTAINER_CREATED,
            {"agent_id": self.agent_id, "container_id": instance.id, "task_id": record.id},
            source=self.agent_id,
            correlation_id=record.id,
        )

        try:
            await self._execute_task_in_container(record, instance, deadline, budget)
        except asyncio.CancelledError:
            record.error = "Task cancelled"
            raise
        except Exception as e:
            record.error = str(e) or type(e).__name__
            logger.error(
                "Task execution failed",
                extra={"task_id": record.id, "container_id": instance.id, "error": record.error},
            )
            if not isinstance(e, (TaskSetupError, TaskTimeoutError)):
                raise
        finally:
            try:
                await self._teardown(record, instance.id)
            finally:
                self._active_tasks.pop(record.id, None)
                self._finish(record)

        await self._notify(on_complete, record)
        return record

    async def _teardown(self, record: TaskRecord, container_id: str) -> None:
        """
        Destroy the task's container even if the task is cancelled meanwhile.

        Cancellations that arrive during teardown are deferred until the
        container is gone, then re-raised.
        """
        cleanup = asyncio.ensure_future(self._cleanup_container(container_id))
        cancelled = False
        while not cleanup.done():
            try:
                await asyncio.shield(cleanup)
            except asyncio.CancelledError:
                cancelled = True
        cleanup.result()

        if cancelled:
            if record.error is None:
                record.error = "Task cancelled"
            raise asyncio.CancelledError()

    async def _execute_task_in_container(
        self,
        record: TaskRecord,
        instance: ContainerInstance,
        deadline: float,
        budget: float,
    ) -> None:
        spec = record.spec
        self.event_bus.publish(
            EventType.TASK_STARTED,
            {
                "task_id": record.id,
                "container_id": instance.id,
                "agent_id": self.agent_id,
                "kind": spec.kind.value,
                "description": spec.description,
            },
            source=self.agent_id,
            correlation_id=record.id,
        )

        loop = asyncio.get_running_loop()
        for step, argv in self.setup_steps(spec):
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TaskTimeoutError(record.id, budget)

            result = await self.manager.run_step(
                instance.id,
                argv,
                timeout_s=min(self.settings.command_timeout_s, remaining),
            )
            record.setup_results.append(result)
            record.log(f"[{step}] {result.command}: {'ok' if result.success else 'failed'}")
            if not result.success:
                detail = result.error or result.stderr.strip() or f"exit code {result.exit_code}"
                raise TaskSetupError(step, detail)

        record.results = await self.manager.execute_commands(
            instance.id, spec.commands, deadline=deadline
        )
        for result in record.results:
            record.log(f"{result.command}: {'ok' if result.success else 'failed'}")

    def setup_steps(self, spec: TaskSpec) -> List[Tuple[str, List[str]]]:
        """
        Preparation steps run before a task's commands.

        Args:
            spec: Task specification

        Returns:
            (step name, argument vector) pairs in execution order
        """
        steps: List[Tuple[str, List[str]]] = []
        if spec.repository_url:
            steps.append(("clone", ["git", "clone", "--", spec.repository_url, "."]))

        packages: List[str] = []
        for runtime in spec.requirements.runtimes:
            packages.extend(RUNTIME_PACKAGES[runtime])
        if packages:
            steps.append(("runtimes", ["apt-get", "install", "-y", *packages]))

        if spec.kind == TaskKind.REPOSITORY_ANALYSIS or spec.requirements.editor:
            steps.extend(("editor", argv) for argv in EDITOR_STEPS)
        return steps

    def _finish(self, record: TaskRecord, error: Optional[str] = None) -> None:
        if error is not None:
            record.error = error
        record.end_time = datetime.now(timezone.utc)

        done = len(record.results)
        for command in record.spec.commands[done:]:
            record.results.append(
                CommandResult(
                    command=command,
                    skipped=True,
                    error=record.error or "Command was not executed",
                )
            )

        succeeded = record.error is None and all(r.success for r in record.results)
        record.status = TaskStatus.COMPLETED if succeeded else TaskStatus.FAILED
        duration = record.duration_s or 0.0

        if succeeded:
            self.metrics.record_completed(duration)
        else:
            self.metrics.record_failed()
        if self.prometheus:
            self.prometheus.record_task(record.spec.kind.value, record.status.value, duration)

        self.event_bus.publish(
            EventType.TASK_COMPLETED if succeeded else EventType.TASK_FAILED,
            {
                "task_id": record.id,
                "container_id": record.container_id,
                "agent_id": self.agent_id,
                "status": record.status.value,
                "duration_s": duration,
                "succeeded": sum(1 for r in record.results if r.success),
                "failed": sum(1 for r in record.results if not r.success),
                "error": record.error,
            },
            source=self.agent_id,
            correlation_id=record.id,
        )

        log = logger.info if succeeded else logger.warning
        log(
            "Task finished",
            extra={
                "task_id": record.id,
                "status": record.status.value,
                "duration_s": duration,
                "error": record.error,
            },
        )
        if not self._shutting_down:
            self.state = "busy" if self._active_tasks else "idle"

    async def _notify(self, on_complete: Optional[CompletionCallback], record: TaskRecord) -> None:
        if on_complete is None:
            return
        try:
            result = on_complete(record)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "Task completion callback failed",
                extra={"task_id": record.id, "error": str(e)},
            )

    async def _cleanup_container(self, container_id: str) -> None:
        try:
            await self.manager.destroy_container(container_id)
        except ContainerNotFoundError:
            self._active_containers.pop(container_id, None)
            logger.debug("Container already destroyed", extra={"container_id": container_id})
            return
        except Exception as e:
            logger.warning(
                "Failed to clean up container",
                extra={"container_id": container_id, "error": str(e)},
            )
            return

        self._active_containers.pop(container_id, None)
        self.metrics.containers_destroyed += 1
        self.event_bus.publish(
            EventType.AGENT_CONTAINER_DESTROYED,
            {"agent_id": self.agent_id, "container_id": container_id},
            source=self.agent_id,
        )

    async def _reap_errored(self, task_id: str) -> None:
        for instance in self.manager.list_containers():
            if instance.task_id != task_id or instance.status != ContainerStatus.ERROR:
                continue
            try:
                await self.manager.destroy_container(instance.id)
            except Exception as e:
                logger.warning(
                    "Failed to reap errored container",
                    extra={"container_id": instance.id, "task_id": task_id, "error": str(e)},
                )

    def _remember(self, record: TaskRecord) -> None:
        self._records[record.id] = record
        while len(self._records) > self.settings.event_history_size:
            self._records.popitem(last=False)

    async def analyze_repository(
        self,
        repository_url: str,
        analysis_commands: List[str],
        *,
        create_pull_request: bool = False,
        on_complete: Optional[CompletionCallback] = None,
    ) -> TaskRecord:
        """
        Clone a repository onto an analysis branch and run analysis commands.

        Args:
            repository_url: Repository to analyze
            analysis_commands: Commands run inside the checkout
            create_pull_request: Open a pull request with the results
            on_complete: Callback invoked with the finished record

        Returns:
            Finished TaskRecord
        """
        commands = [f"git checkout -b {ANALYSIS_BRANCH}", *analysis_commands]
        if create_pull_request:
            commands.append(PULL_REQUEST_COMMAND)

        spec = TaskSpec(
            kind=TaskKind.REPOSITORY_ANALYSIS,
            description=f"Analyze repository {repository_url}",
            repository_url=repository_url,
            commands=commands,
            requirements=TaskRequirements(editor=True, runtimes=["node", "python"]),
        )
        return await self.execute_task(spec, on_complete=on_complete)

    async def run_custom_task(
        self,
        description: str,
        commands: List[str],
        *,
        on_complete: Optional[CompletionCallback] = None,
    ) -> TaskRecord:
        """
        Run free-form commands in a fully provisioned container.

        Args:
            description: Human description of the task
            commands: Shell commands

        Returns:
            Finished TaskRecord
        """
        spec = TaskSpec(
            kind=TaskKind.CUSTOM,
            description=description,
            commands=commands,
            requirements=TaskRequirements(editor=True, runtimes=["python", "node"]),
        )
        return await self.execute_task(spec, on_complete=on_complete)

    def cancel_task(self, task_id: str) -> bool:
        """
        Cancel an in-flight task. Its container is still torn down.

        Args:
            task_id: Task ID

        Returns:
            True if a cancellation was requested, False if the task already finished

        Raises:
            TaskNotFoundError: If the task is unknown
        """
        runner = self._running.get(task_id)
        if runner is None or runner.done():
            if task_id in self._records:
                return False
            raise TaskNotFoundError(task_id)

        self._cancel_requested.add(task_id)
        runner.cancel()
        logger.info("Task cancellation requested", extra={"task_id": task_id})
        return True

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight tasks to finish.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely)

        Returns:
            True if no task is still running
        """
        runners = [r for r in self._running.values() if not r.done()]
        if not runners:
            return True
        _, pending = await asyncio.wait(runners, timeout=timeout)
        return not pending

    def cancel_all(self) -> int:
        """Cancel every in-flight task and return how many were cancelled."""
        count = 0
        for task_id in list(self._running):
            if self.cancel_task(task_id):
                count += 1
        return count

    def get_status(self) -> Dict[str, Any]:
        """
        Snapshot of the agent.

        Returns:
            Agent ID, state, active container and task counts, and metrics
        """
        return {
            "id": self.agent_id,
            "status": self.state,
            "active_containers": len(self._active_containers),
            "active_tasks": len(self._active_tasks),
            "metrics": self.metrics.to_dict(),
        }

    def get_active_containers(self) -> List[ContainerInstance]:
        """Containers currently owned by running tasks."""
        return list(self._active_containers.values())

    def get_active_tasks(self) -> List[TaskRecord]:
        """Tasks currently running."""
        return list(self._active_tasks.values())

    def get_task(self, task_id: str) -> Optional[TaskRecord]:
        """Look up a task record, running or finished."""
        return self._records.get(task_id)

    async def stop_all(self) -> None:
        """Destroy every container the agent still tracks."""
        for container_id in list(self._active_containers):
            await self._cleanup_container(container_id)

    async def shutdown(self) -> None:
        """Refuse new tasks and destroy every tracked container."""
        if self._shutting_down:
            return
        self._shutting_down = True
        self.state = "stopping"
        logger.info(
            "Agent shutting down",
            extra={"agent_id": self.agent_id, "active_containers": len(self._active_containers)},
        )
        await self.stop_all()
        self.state = "stopped"

    @property
    def is_shutting_down(self) -> bool:
        """Whether the agent has stopped accepting tasks."""
        return self._shutting_down

"""Custom exceptions for Taskbox."""

from typing import List, Optional


class TaskboxError(Exception):
    """Base exception for Taskbox errors."""

    pass


class ContainerError(TaskboxError):
    """Base exception for container-related errors."""

    pass


class ContainerNotFoundError(ContainerError):
    """Exception raised when a container is not registered."""

    def __init__(self, identifier: str) -> None:
        """
        Initialize ContainerNotFoundError.

        Args:
            identifier: Container ID that was not found
        """
        self.identifier = identifier
        super().__init__(f"Container not found: {identifier}")


class ContainerCreationError(ContainerError):
    """Exception raised when a started container cannot be prepared for use."""

    def __init__(self, identifier: str, reason: str) -> None:
        """
        Initialize ContainerCreationError.

        Args:
            identifier: Container ID
            reason: Why preparation failed
        """
        self.identifier = identifier
        self.reason = reason
        super().__init__(f"Failed to prepare container {identifier}: {reason}")


class ContainerNotRunningError(ContainerError):
    """Exception raised when commands target a container that is not running."""

    def __init__(self, identifier: str, status: str) -> None:
        """
        Initialize ContainerNotRunningError.

        Args:
            identifier: Container ID
            status: Current lifecycle status of the container
        """
        self.identifier = identifier
        self.status = status
        super().__init__(f"Container {identifier} is not running (status: {status})")


class EngineError(TaskboxError):
    """Exception raised when a container engine operation fails."""

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        """
        Initialize EngineError.

        Args:
            message: Error message
            original_error: Original exception raised by the engine backend
        """
        self.original_error = original_error
        super().__init__(message)


class EngineCommandError(EngineError):
    """Exception raised when an engine control command exits non-zero."""

    def __init__(self, argv: List[str], exit_code: int, stderr: str = "") -> None:
        """
        Initialize EngineCommandError.

        Args:
            argv: Argument vector that was executed
            exit_code: Exit code of the engine command
            stderr: Captured standard error
        """
        self.argv = list(argv)
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip() or "no output"
        super().__init__(f"Engine command {argv[:2]} failed with exit code {exit_code}: {detail}")


class EngineNotFoundError(EngineError):
    """Exception raised when the engine does not know a runtime container."""

    def __init__(self, runtime_id: str, original_error: Exception | None = None) -> None:
        """
        Initialize EngineNotFoundError.

        Args:
            runtime_id: Engine-assigned container identifier
            original_error: Original exception raised by the engine backend
        """
        self.runtime_id = runtime_id
        super().__init__(f"No such container in engine: {runtime_id}", original_error)


class EngineTimeoutError(EngineError):
    """Exception raised when an engine operation exceeds its deadline."""

    def __init__(self, argv: List[str], timeout_s: float) -> None:
        """
        Initialize EngineTimeoutError.

        Args:
            argv: Argument vector that timed out
            timeout_s: Timeout in seconds
        """
        self.argv = list(argv)
        self.timeout_s = timeout_s
        super().__init__(f"Engine operation timed out after {timeout_s:g} seconds")


class EngineUnavailableError(EngineError):
    """Exception raised when the container engine cannot be reached."""

    def __init__(self, message: str = "Container engine is unavailable") -> None:
        """
        Initialize EngineUnavailableError.

        Args:
            message: Error message
        """
        super().__init__(message)


class AddressResolutionError(EngineError):
    """Exception raised when a container has no resolvable network address."""

    def __init__(self, runtime_id: str) -> None:
        """
        Initialize AddressResolutionError.

        Args:
            runtime_id: Engine-assigned container identifier
        """
        self.runtime_id = runtime_id
        super().__init__(f"Could not resolve network address for container {runtime_id}")


class TaskError(TaskboxError):
    """Base exception for task-related errors."""

    pass


class TaskSetupError(TaskError):
    """Exception raised when a task preparation step fails."""

    def __init__(self, step: str, detail: str) -> None:
        """
        Initialize TaskSetupError.

        Args:
            step: Name of the setup step (clone, runtimes, editor)
            detail: Failure detail from the step
        """
        self.step = step
        self.detail = detail
        super().__init__(f"Task setup step '{step}' failed: {detail}")


class TaskTimeoutError(TaskError):
    """Exception raised when a task exceeds its deadline outside the command loop."""

    def __init__(self, task_id: str, timeout_s: float) -> None:
        """
        Initialize TaskTimeoutError.

        Args:
            task_id: Task ID that timed out
            timeout_s: Timeout in seconds
        """
        self.task_id = task_id
        self.timeout_s = timeout_s
        super().__init__(f"Task {task_id} timed out after {timeout_s:g} seconds")


class TaskNotFoundError(TaskError):
    """Exception raised when a task is not known to the agent."""

    def __init__(self, task_id: str) -> None:
        """
        Initialize TaskNotFoundError.

        Args:
            task_id: Task ID that was not found
        """
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class AgentShutdownError(TaskError):
    """Exception raised when a task is submitted to an agent that is shutting down."""

    def __init__(self, agent_id: str) -> None:
        """
        Initialize AgentShutdownError.

        Args:
            agent_id: Agent identifier
        """
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} is shutting down and accepts no new tasks")


class UnsafeValueError(TaskboxError, ValueError):
    """Exception raised when an externally supplied value fails validation."""

    def __init__(self, field: str, value: Optional[str], reason: str) -> None:
        """
        Initialize UnsafeValueError.

        Args:
            field: Name of the offending field
            value: Rejected value
            reason: Reason for the rejection
        """
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Rejected value for '{field}': {reason}")

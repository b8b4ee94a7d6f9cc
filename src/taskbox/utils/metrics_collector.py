"""Prometheus metrics collection for Taskbox."""

from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class MetricsCollector:
    """Mirrors agent and container activity into Prometheus metrics."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize metrics collector with all metrics.

        Args:
            registry: Registry to register metrics in (a private one by default)
        """
        self.registry = registry if registry is not None else CollectorRegistry()

        # Counter metrics
        self.containers_created_total = Counter(
            "taskbox_containers_created_total",
            "Total number of containers created",
            ["image"],
            registry=self.registry,
        )

        self.containers_destroyed_total = Counter(
            "taskbox_containers_destroyed_total",
            "Total number of containers destroyed",
            registry=self.registry,
        )

        self.tasks_total = Counter(
            "taskbox_tasks_total",
            "Total number of tasks by kind and final status",
            ["kind", "status"],
            registry=self.registry,
        )

        self.commands_total = Counter(
            "taskbox_commands_total",
            "Total number of commands executed",
            ["status"],
            registry=self.registry,
        )

        # Histogram metrics
        self.task_duration_seconds = Histogram(
            "taskbox_task_duration_seconds",
            "Task duration in seconds",
            buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 600.0, 1800.0, 3600.0],
            registry=self.registry,
        )

        self.command_duration_seconds = Histogram(
            "taskbox_command_duration_seconds",
            "Command duration in seconds",
            buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 600.0],
            registry=self.registry,
        )

        # Gauge metrics
        self.active_containers = Gauge(
            "taskbox_active_containers",
            "Number of registered containers",
            registry=self.registry,
        )

    def record_container_created(self, image: str) -> None:
        """
        Record a container creation.

        Args:
            image: Image used for the container
        """
        self.containers_created_total.labels(image=image).inc()

    def record_container_destroyed(self) -> None:
        """Record a container teardown."""
        self.containers_destroyed_total.inc()

    def record_task(self, kind: str, status: str, duration_seconds: float) -> None:
        """
        Record a finished task.

        Args:
            kind: Task kind
            status: Final status (completed or failed)
            duration_seconds: Task duration in seconds
        """
        self.tasks_total.labels(kind=kind, status=status).inc()
        self.task_duration_seconds.observe(duration_seconds)

    def record_command(self, success: bool, duration_seconds: float) -> None:
        """
        Record a command execution.

        Args:
            success: Whether the command succeeded
            duration_seconds: Duration in seconds
        """
        self.commands_total.labels(status="success" if success else "failure").inc()
        self.command_duration_seconds.observe(duration_seconds)

    def set_active_containers(self, count: int) -> None:
        """
        Set the number of registered containers.

        Args:
            count: Number of containers
        """
        self.active_containers.set(count)

    def get_metrics(self) -> bytes:
        """
        Get current metrics in Prometheus format.

        Returns:
            Metrics data in bytes
        """
        return generate_latest(self.registry)

"""Container engine backends."""

from taskbox.config import Settings

from .base import ContainerEngine, ExecOutcome
from .cli import CLIEngine
from .sdk import DockerSDKEngine


def create_engine(settings: Settings) -> ContainerEngine:
    """
    Create the engine backend selected by settings.

    Args:
        settings: Application settings

    Returns:
        ContainerEngine implementation
    """
    if settings.engine_backend == "sdk":
        return DockerSDKEngine(docker_host=settings.docker_host)
    return CLIEngine(binary=settings.engine_binary)


__all__ = [
    "CLIEngine",
    "ContainerEngine",
    "DockerSDKEngine",
    "ExecOutcome",
    "create_engine",
]

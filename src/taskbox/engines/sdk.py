"""Container engine backed by the Docker SDK."""

import asyncio
from typing import Dict, List, Optional

import docker
from docker import DockerClient
from docker.errors import DockerException, NotFound

from taskbox.engines.base import (
    KEEP_ALIVE_COMMAND,
    ContainerEngine,
    ExecOutcome,
    container_labels,
)
from taskbox.models.containers import ContainerConfig
from taskbox.utils import get_logger
from taskbox.utils.exceptions import (
    EngineError,
    EngineNotFoundError,
    EngineTimeoutError,
    EngineUnavailableError,
)

logger = get_logger(__name__)


def port_bindings(ports: tuple[str, ...]) -> Dict[str, object]:
    """
    Convert ``[ip:]host:container[/proto]`` mappings to docker-py port bindings.

    Args:
        ports: Port mappings in engine CLI notation

    Returns:
        Mapping of ``container/proto`` to host port or ``(ip, port)``
    """
    bindings: Dict[str, object] = {}
    for mapping in ports:
        spec, _, proto = mapping.partition("/")
        parts = spec.rsplit(":", 2)
        container_port = f"{parts[-1]}/{proto or 'tcp'}"
        if len(parts) == 1:
            bindings[container_port] = None
        elif len(parts) == 2:
            bindings[container_port] = int(parts[0])
        else:
            bindings[container_port] = (parts[0], int(parts[1]))
    return bindings


class DockerSDKEngine(ContainerEngine):
    """Engine backend using docker-py, with blocking calls moved off the event loop."""

    name = "sdk"

    def __init__(self, docker_host: str | None = None) -> None:
        """
        Initialize SDK engine.

        Args:
            docker_host: Docker daemon URL (None uses environment detection)
        """
        self.docker_host = docker_host
        self._client: DockerClient | None = None

    def _get_client(self) -> DockerClient:
        """
        Get or create the Docker client.

        Raises:
            EngineUnavailableError: If unable to connect to the Docker daemon
        """
        if self._client is None:
            try:
                if self.docker_host:
                    self._client = docker.DockerClient(base_url=self.docker_host)
                else:
                    self._client = docker.from_env()
            except DockerException as e:
                logger.error("Failed to connect to Docker daemon", extra={"error": str(e)})
                raise EngineUnavailableError(f"Docker daemon is unreachable: {e}") from e
        return self._client

    def _get_container(self, runtime_id: str):
        try:
            return self._get_client().containers.get(runtime_id)
        except NotFound as e:
            raise EngineNotFoundError(runtime_id, e) from e
        except (DockerException, OSError) as e:
            raise EngineError(f"Failed to look up container {runtime_id}: {e}", e) from e

    async def ping(self) -> str:
        """Ping the daemon and return its version."""

        def _ping() -> str:
            client = self._get_client()
            try:
                client.ping()
                return client.version().get("Version", "")
            except DockerException as e:
                raise EngineUnavailableError(f"Docker daemon is unreachable: {e}") from e

        version = await asyncio.to_thread(_ping)
        logger.info("Connected to Docker daemon", extra={"docker_version": version})
        return version

    async def run(self, config: ContainerConfig) -> str:
        """Start a detached keep-alive container."""

        def _run() -> str:
            try:
                container = self._get_client().containers.run(
                    image=config.image,
                    command=KEEP_ALIVE_COMMAND,
                    name=config.name,
                    detach=True,
                    mem_limit=config.memory,
                    nano_cpus=int(float(config.cpu) * 1_000_000_000),
                    ports=port_bindings(config.ports),
                    volumes=list(config.volumes),
                    environment=dict(config.environment),
                    working_dir=config.working_directory,
                    auto_remove=config.auto_remove,
                    labels=container_labels(config),
                )
            except DockerException as e:
                raise EngineError(f"Failed to start container: {e}", e) from e
            return container.id

        return await asyncio.to_thread(_run)

    async def inspect_address(self, runtime_id: str) -> str:
        """Resolve the container's IP address across its networks."""

        def _inspect() -> str:
            container = self._get_container(runtime_id)
            try:
                container.reload()
            except NotFound as e:
                raise EngineNotFoundError(runtime_id, e) from e
            except (DockerException, OSError) as e:
                raise EngineError(f"Failed to inspect container: {e}", e) from e
            networks = container.attrs.get("NetworkSettings", {}).get("Networks") or {}
            return "".join(n.get("IPAddress") or "" for n in networks.values())

        return await asyncio.to_thread(_inspect)

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

        docker-py's exec_run is blocking and cannot be interrupted, so a timed
        out exec keeps its worker thread until the daemon returns.
        """

        def _exec() -> ExecOutcome:
            container = self._get_container(runtime_id)
            try:
                result = container.exec_run(
                    cmd=argv,
                    workdir=workdir,
                    environment=env,
                    demux=True,
                )
            except NotFound as e:
                raise EngineNotFoundError(runtime_id, e) from e
            except (DockerException, OSError) as e:
                raise EngineError(f"Docker API error during exec: {e}", e) from e
            stdout_data, stderr_data = result.output or (None, None)
            return ExecOutcome(
                exit_code=result.exit_code if result.exit_code is not None else -1,
                stdout=(stdout_data or b"").decode("utf-8", errors="replace"),
                stderr=(stderr_data or b"").decode("utf-8", errors="replace"),
            )

        try:
            if timeout_s is None:
                return await asyncio.to_thread(_exec)
            return await asyncio.wait_for(asyncio.to_thread(_exec), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Docker exec timed out",
                extra={"runtime_id": runtime_id, "timeout_s": timeout_s},
            )
            raise EngineTimeoutError(["exec", runtime_id, *argv], timeout_s)

    async def logs(self, runtime_id: str) -> str:
        """Return the container's accumulated output."""

        def _logs() -> str:
            container = self._get_container(runtime_id)
            try:
                return container.logs().decode("utf-8", errors="replace")
            except (DockerException, OSError) as e:
                raise EngineError(f"Failed to read container logs: {e}", e) from e

        return await asyncio.to_thread(_logs)

    async def stop(self, runtime_id: str, timeout_s: int = 10) -> None:
        """Stop the container gracefully."""

        def _stop() -> None:
            container = self._get_container(runtime_id)
            try:
                container.stop(timeout=timeout_s)
            except NotFound as e:
                raise EngineNotFoundError(runtime_id, e) from e
            except (DockerException, OSError) as e:
                raise EngineError(f"Failed to stop container: {e}", e) from e

        await asyncio.to_thread(_stop)

    async def remove(self, runtime_id: str, force: bool = False) -> None:
        """Remove the container and its anonymous volumes."""

        def _remove() -> None:
            container = self._get_container(runtime_id)
            try:
                container.remove(force=force, v=True)
            except NotFound as e:
                raise EngineNotFoundError(runtime_id, e) from e
            except (DockerException, OSError) as e:
                raise EngineError(f"Failed to remove container: {e}", e) from e

        await asyncio.to_thread(_remove)

    async def close(self) -> None:
        """Close the Docker client connection."""
        if self._client:
            self._client.close()
            self._client = None
            logger.info("Docker client connection closed")

"""Container engine driven through its command-line interface."""

import asyncio
from typing import Dict, List, Optional

from taskbox.engines.base import (
    KEEP_ALIVE_COMMAND,
    ContainerEngine,
    ExecOutcome,
    container_labels,
)
from taskbox.models.containers import ContainerConfig
from taskbox.utils import get_logger
from taskbox.utils.exceptions import (
    EngineCommandError,
    EngineError,
    EngineNotFoundError,
    EngineTimeoutError,
    EngineUnavailableError,
)

logger = get_logger(__name__)

# Upper bound for control operations (run may pull an image)
CONTROL_TIMEOUT_S = 300

ADDRESS_TEMPLATE = "{{range .NetworkSettings.Networks}}{{.IPAddress}}{{end}}"

_NOT_FOUND_MARKERS = ("no such container", "no container with name or id")


def _is_not_found(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _NOT_FOUND_MARKERS)


def build_run_args(config: ContainerConfig) -> List[str]:
    """
    Build the argument vector for a detached, keep-alive ``run``.

    Args:
        config: Container configuration

    Returns:
        Arguments following the engine binary
    """
    args = [
        "run",
        "-d",
        "--name",
        config.name,
        "--memory",
        config.memory,
        "--cpus",
        config.cpu,
        "--workdir",
        config.working_directory,
    ]

    for port in config.ports:
        args.extend(["-p", port])

    for volume in config.volumes:
        args.extend(["-v", volume])

    for key, value in config.environment.items():
        args.extend(["-e", f"{key}={value}"])

    for key, value in container_labels(config).items():
        args.extend(["--label", f"{key}={value}"])

    if config.auto_remove:
        args.append("--rm")

    args.append(config.image)
    args.extend(KEEP_ALIVE_COMMAND)
    return args


class CLIEngine(ContainerEngine):
    """Engine backend that shells out to a Docker-compatible binary without a host shell."""

    name = "cli"

    def __init__(self, binary: str = "docker") -> None:
        """
        Initialize CLI engine.

        Args:
            binary: Engine binary (docker, podman, nerdctl, ...)
        """
        self.binary = binary

    async def _invoke(
        self,
        args: List[str],
        timeout_s: Optional[float] = CONTROL_TIMEOUT_S,
        check: bool = True,
        runtime_id: Optional[str] = None,
    ) -> ExecOutcome:
        """
        Run one engine command and capture its output.

        Args:
            args: Arguments following the engine binary
            timeout_s: Deadline for the command (None waits indefinitely)
            check: Raise on non-zero exit
            runtime_id: Container the command targets, for not-found reporting

        Returns:
            ExecOutcome with exit code and decoded output
        """
        argv = [self.binary, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise EngineUnavailableError(f"Container engine binary not found: {self.binary}") from e
        except (OSError, ValueError) as e:
            # E2BIG for oversized argument vectors, ValueError for embedded NUL bytes
            raise EngineError(f"Failed to start engine command {args[0]}: {e}", e) from e

        try:
            if timeout_s is None:
                stdout_data, stderr_data = await proc.communicate()
            else:
                stdout_data, stderr_data = await asyncio.wait_for(
                    proc.communicate(), timeout=timeout_s
                )
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.warning(
                "Engine command timed out",
                extra={"operation": args[0], "timeout_s": timeout_s},
            )
            raise EngineTimeoutError(argv, timeout_s)
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        outcome = ExecOutcome(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout_data.decode("utf-8", errors="replace"),
            stderr=stderr_data.decode("utf-8", errors="replace"),
        )

        if outcome.exit_code != 0 and runtime_id and _is_not_found(outcome.stderr):
            raise EngineNotFoundError(runtime_id)

        if check and outcome.exit_code != 0:
            raise EngineCommandError(argv, outcome.exit_code, outcome.stderr)

        return outcome

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()

    async def ping(self) -> str:
        """Check the engine daemon answers and return its version."""
        try:
            outcome = await self._invoke(
                ["version", "--format", "{{.Server.Version}}"], timeout_s=30
            )
        except EngineUnavailableError:
            raise
        except EngineError as e:
            raise EngineUnavailableError(f"Container engine is unavailable: {e}") from e
        return outcome.stdout.strip()

    async def run(self, config: ContainerConfig) -> str:
        """Start the container and return the engine-assigned identifier."""
        outcome = await self._invoke(build_run_args(config))
        runtime_id = outcome.stdout.strip().splitlines()[-1] if outcome.stdout.strip() else ""
        if not runtime_id:
            raise EngineCommandError([self.binary, "run"], outcome.exit_code, "engine returned no container id")
        return runtime_id

    async def inspect_address(self, runtime_id: str) -> str:
        """Resolve the container's IP address across its networks."""
        outcome = await self._invoke(
            ["inspect", "-f", ADDRESS_TEMPLATE, runtime_id], runtime_id=runtime_id
        )
        return outcome.stdout.strip()

    async def exec(
        self,
        runtime_id: str,
        argv: List[str],
        workdir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout_s: Optional[float] = None,
    ) -> ExecOutcome:
        """Run an argument vector inside the container; non-zero exits are returned."""
        args = ["exec"]
        if workdir:
            args.extend(["-w", workdir])
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(runtime_id)
        args.extend(argv)
        return await self._invoke(args, timeout_s=timeout_s, check=False, runtime_id=runtime_id)

    async def logs(self, runtime_id: str) -> str:
        """Return stdout and stderr accumulated by the container's main process."""
        outcome = await self._invoke(["logs", runtime_id], runtime_id=runtime_id)
        return outcome.stdout + outcome.stderr

    async def stop(self, runtime_id: str, timeout_s: int = 10) -> None:
        """Stop the container gracefully."""
        await self._invoke(
            ["stop", "-t", str(timeout_s), runtime_id],
            timeout_s=CONTROL_TIMEOUT_S + timeout_s,
            runtime_id=runtime_id,
        )

    async def remove(self, runtime_id: str, force: bool = False) -> None:
        """Remove the container."""
        args = ["rm"]
        if force:
            args.append("-f")
        args.append(runtime_id)
        await self._invoke(args, runtime_id=runtime_id)

"""Validation of externally supplied values before they reach the engine."""

import posixpath
import re
from urllib.parse import urlsplit

from taskbox.utils.exceptions import UnsafeValueError

ALLOWED_URL_SCHEMES = {"https", "http", "ssh", "git"}

_SCP_LIKE_URL = re.compile(r"^[A-Za-z0-9._-]+@[A-Za-z0-9.-]+:[A-Za-z0-9._/~-]+$")
_MEMORY = re.compile(r"^[1-9][0-9]*[bkmgBKMG]?$")
_CPU = re.compile(r"^(?:[0-9]+(?:\.[0-9]+)?|\.[0-9]+)$")
_PORT_MAPPING = re.compile(
    r"^(?:(?:[0-9.]+|\[[0-9a-fA-F:]+\]):)?(?:[0-9]{1,5}:)?[0-9]{1,5}(?:/(?:tcp|udp|sctp))?$"
)
_ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _has_control_chars(value: str) -> bool:
    return any(ord(ch) < 32 or ord(ch) == 127 for ch in value)


def validate_repository_url(url: str) -> str:
    """
    Validate a repository URL before it is handed to git.

    Accepts http(s), ssh and git URLs and scp-like ``user@host:path`` forms.

    Args:
        url: Repository URL supplied by the caller

    Returns:
        The stripped URL

    Raises:
        UnsafeValueError: If the URL could be interpreted as an option or transport
    """
    value = url.strip()
    if not value:
        raise UnsafeValueError("repository_url", url, "empty URL")
    if value.startswith("-"):
        raise UnsafeValueError("repository_url", url, "URL must not start with '-'")
    if _has_control_chars(value) or any(ch.isspace() for ch in value):
        raise UnsafeValueError("repository_url", url, "URL contains whitespace or control characters")
    if "::" in value:
        raise UnsafeValueError("repository_url", url, "remote helper transports are not allowed")

    if _SCP_LIKE_URL.match(value):
        return value

    parts = urlsplit(value)
    if parts.scheme.lower() not in ALLOWED_URL_SCHEMES:
        raise UnsafeValueError(
            "repository_url", url, f"scheme must be one of {sorted(ALLOWED_URL_SCHEMES)}"
        )
    if not parts.netloc:
        raise UnsafeValueError("repository_url", url, "URL has no host")
    return value


def validate_command(command: str) -> str:
    """
    Validate a shell command destined for the in-container shell.

    The command is passed as a single argument to the shell, so only values
    that cannot be represented in an argument vector are rejected.

    Raises:
        UnsafeValueError: If the command is blank or contains NUL bytes
    """
    if "\x00" in command:
        raise UnsafeValueError("commands", command, "command contains a NUL byte")
    if not command.strip():
        raise UnsafeValueError("commands", command, "command is empty")
    return command


def validate_memory(value: str) -> str:
    """Validate an engine memory limit such as ``512m`` or ``2g``."""
    if not _MEMORY.match(value):
        raise UnsafeValueError("memory", value, "expected a size like 512m or 2g")
    return value.lower()


def validate_cpu(value: str) -> str:
    """Validate a CPU share such as ``2`` or ``0.5``."""
    if not _CPU.match(value) or float(value) <= 0:
        raise UnsafeValueError("cpu", value, "expected a positive number")
    return value


def validate_port_mapping(value: str) -> str:
    """Validate a ``[ip:][host:]container[/proto]`` port mapping."""
    if not _PORT_MAPPING.match(value):
        raise UnsafeValueError("ports", value, "expected host:container[/proto]")
    return value


def validate_volume(value: str) -> str:
    """Validate a ``source:destination[:mode]`` volume mapping."""
    if value.startswith("-") or _has_control_chars(value):
        raise UnsafeValueError("volumes", value, "volume must not start with '-' or contain control characters")
    parts = value.split(":")
    if len(parts) not in (2, 3) or not parts[0] or not posixpath.isabs(parts[1]):
        raise UnsafeValueError("volumes", value, "expected source:/absolute/destination[:mode]")
    if len(parts) == 3 and parts[2] not in ("ro", "rw", "z", "Z"):
        raise UnsafeValueError("volumes", value, "mode must be ro, rw, z or Z")
    return value


def validate_env_key(key: str) -> str:
    """Validate an environment variable name."""
    if not _ENV_KEY.match(key):
        raise UnsafeValueError("environment", key, "invalid environment variable name")
    return key


def validate_working_directory(path: str) -> str:
    """Validate the container working directory."""
    if not posixpath.isabs(path) or _has_control_chars(path):
        raise UnsafeValueError("working_directory", path, "expected an absolute path")
    return posixpath.normpath(path)

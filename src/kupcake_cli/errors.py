"""Error taxonomy for kupcake deployments.

Every fatal error raised by the deploy engine is a KupError carrying enough
context (container name, file path, stage) to diagnose without logs.
"""

from dataclasses import dataclass, field
from typing import Any

# Error codes
CONFIG_ERROR = "config"
SNAPSHOT_ERROR = "snapshot"
READINESS_TIMEOUT = "readiness_timeout"
RESOURCE_ERROR = "resource"
PIPELINE_ORDER_ERROR = "pipeline_order"
STAGE_ERROR = "stage"
RPC_ERROR = "rpc"


@dataclass
class KupError(Exception):
    """Base error class for deployment errors."""

    code: str
    message: str
    retryable: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        error = {"code": self.code, "message": self.message}
        if self.data:
            error["data"] = self.data
        return error


@dataclass
class ConfigError(KupError):
    """Invalid user input or configuration (fatal, never retried)."""

    code: str = CONFIG_ERROR
    message: str = "Invalid configuration"
    retryable: bool = False


@dataclass
class SnapshotError(ConfigError):
    """Malformed or ambiguous snapshot directory."""

    code: str = SNAPSHOT_ERROR
    message: str = "Invalid snapshot directory"


@dataclass
class ReadinessTimeoutError(KupError):
    """A readiness wait exhausted its budget."""

    code: str = READINESS_TIMEOUT
    message: str = "Timeout waiting for service to be ready"
    retryable: bool = True


@dataclass
class ResourceError(KupError):
    """Container or network could not be created, started or inspected."""

    code: str = RESOURCE_ERROR
    message: str = "Docker operation failed"
    retryable: bool = False


@dataclass
class RpcError(KupError):
    """A JSON-RPC endpoint answered with an error object."""

    code: str = RPC_ERROR
    message: str = "JSON-RPC call failed"
    retryable: bool = True


@dataclass
class PipelineOrderError(KupError):
    """Stages were composed out of their declared order."""

    code: str = PIPELINE_ORDER_ERROR
    message: str = "Invalid stage order"
    retryable: bool = False


@dataclass
class StageError(KupError):
    """A pipeline stage failed; wraps the underlying cause."""

    code: str = STAGE_ERROR
    message: str = "Stage failed"
    retryable: bool = False


def map_docker_error(args: list[str], stderr: str, container_name: str | None = None) -> ResourceError:
    """Map a failed docker command to ResourceError.

    Args:
        args: docker sub-command arguments (without the leading "docker")
        stderr: Error output from docker
        container_name: Container the command targeted, if any

    Returns:
        ResourceError describing the failure
    """
    action = " ".join(args[:2]) if args else "docker"
    detail = stderr.strip() or "no error output"
    data: dict[str, Any] = {"command": ["docker", *args], "stderr": stderr.strip()}

    if container_name:
        data["container_name"] = container_name
        return ResourceError(
            message=f"docker {action} failed for container '{container_name}': {detail}",
            data=data,
        )

    return ResourceError(message=f"docker {action} failed: {detail}", data=data)


def wrap_stage_error(stage: str, error: Exception) -> StageError:
    """Wrap any exception raised inside a stage.

    Args:
        stage: Stage name (e.g. "l1", "contracts")
        error: Original exception

    Returns:
        StageError whose message names the stage and the cause
    """
    data: dict[str, Any] = {"stage": stage}
    if isinstance(error, KupError):
        data["cause"] = error.to_dict()
        retryable = error.retryable
    else:
        data["cause"] = {"type": type(error).__name__, "message": str(error)}
        retryable = False

    return StageError(
        message=f"Stage '{stage}' failed: {error}",
        retryable=retryable,
        data=data,
    )

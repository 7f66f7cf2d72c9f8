"""Docker resource management for deployments.

This module owns the container runtime for one deployment: the network,
every container it starts, image pulls, and bounded-time teardown. All
docker interaction goes through the docker CLI.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..errors import ConfigError, ResourceError, map_docker_error
from ..shared.logging import CONTAINER_LOGGER

logger = logging.getLogger(__name__)
container_logger = logging.getLogger(CONTAINER_LOGGER)

# Teardown budgets
DOCKER_TEARDOWN_TIMEOUT = 60.0
STOP_CONTAINER_TIMEOUT = 5

# Local binary images
LOCAL_BINARY_BASE_IMAGE = "debian"
LOCAL_BINARY_BASE_TAG = "trixie-slim"
LOCAL_BINARY_DOCKERFILE = f"""FROM {LOCAL_BINARY_BASE_IMAGE}:{LOCAL_BINARY_BASE_TAG}
COPY binary /binary
RUN chmod +x /binary
ENTRYPOINT ["/binary"]
"""

# Lines of container output attached to errors
LOG_TAIL_LINES = 50


class NetworkMode(Enum):
    """How containers are attached to the host network."""

    BRIDGE = "bridge"  # Isolated network, explicit port publishing
    HOST = "host"  # Host network namespace, everything on localhost


@dataclass
class DockerImage:
    """Image reference, or a local binary wrapped into an image on demand."""

    image: str | None = None
    tag: str | None = None
    binary: str | None = None
    binary_name: str | None = None

    @classmethod
    def from_binary(cls, path: str | Path, name: str | None = None) -> DockerImage:
        """Create an image backed by a local binary."""
        return cls(binary=str(path), binary_name=name)

    @classmethod
    def parse(cls, ref: str) -> DockerImage:
        """Parse "name[:tag]" into a DockerImage (tag defaults to latest)."""
        name, sep, tag = ref.rpartition(":")
        if not sep or "/" in tag:
            return cls(image=ref, tag="latest")
        return cls(image=name, tag=tag)

    @property
    def is_local_binary(self) -> bool:
        return self.binary is not None

    def image_ref(self) -> str:
        """Full "image:tag" reference for remote images."""
        if self.is_local_binary or not self.image:
            raise ConfigError(
                message="Local binary images have no registry reference",
                data={"binary": self.binary},
            )
        return f"{self.image}:{self.tag or 'latest'}"

    def to_dict(self) -> dict[str, Any]:
        if self.is_local_binary:
            data = {"binary": self.binary}
            if self.binary_name:
                data["binary_name"] = self.binary_name
            return data
        return {"image": self.image, "tag": self.tag}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DockerImage:
        return cls(
            image=data.get("image"),
            tag=data.get("tag"),
            binary=data.get("binary"),
            binary_name=data.get("binary_name"),
        )


@dataclass(frozen=True)
class PortMapping:
    """Container port published to the host.

    host_port 0 lets docker pick an ephemeral host port.
    """

    container_port: int
    host_port: int = 0
    protocol: str = "tcp"

    @classmethod
    def tcp_optional(cls, container_port: int, host_port: int | None) -> PortMapping | None:
        """TCP mapping, or None when the port stays internal."""
        if host_port is None:
            return None
        return cls(container_port, host_port, "tcp")

    @classmethod
    def udp_optional(cls, container_port: int, host_port: int | None) -> PortMapping | None:
        """UDP mapping, or None when the port stays internal."""
        if host_port is None:
            return None
        return cls(container_port, host_port, "udp")

    @property
    def key(self) -> str:
        return f"{self.container_port}/{self.protocol}"

    def publish_arg(self) -> str:
        """Value for `docker create -p`."""
        if self.host_port == 0:
            return self.key
        return f"{self.host_port}:{self.key}"


def port_mappings(*mappings: PortMapping | None) -> list[PortMapping]:
    """Drop the internal-only (None) entries of a mapping list."""
    return [m for m in mappings if m is not None]


@dataclass
class ServiceConfig:
    """Container-level configuration for one service."""

    image: DockerImage
    cmd: list[str] = field(default_factory=list)
    entrypoint: list[str] | None = None
    ports: list[PortMapping] = field(default_factory=list)
    binds: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    user: str | None = None

    def bind(self, host_path: Path | str, container_path: Path | str, mode: str = "rw") -> ServiceConfig:
        """Add a bind mount and return self for chaining."""
        self.binds.append(f"{host_path}:{container_path}:{mode}")
        return self


@dataclass
class StartOptions:
    """How start_service treats the container after it starts."""

    stream_logs: bool = False
    wait: bool = False  # Block until exit; non-zero exit is an error
    collect_logs: bool = False  # With wait, capture the full output


@dataclass
class ContainerHandle:
    """A container started by DockerManager."""

    container_id: str
    container_name: str
    bound_ports: dict[str, int] = field(default_factory=dict)
    exit_code: int | None = None
    logs: str | None = None

    def host_port(self, container_port: int, protocol: str = "tcp") -> int | None:
        """Host port bound to a container port, if published."""
        return self.bound_ports.get(f"{container_port}/{protocol}")


@dataclass
class CleanupResult:
    """Result of cleanup_by_prefix."""

    containers_removed: list[str] = field(default_factory=list)
    network_removed: str | None = None


@dataclass
class CommandResult:
    """Result of one docker CLI invocation."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class DockerCLI:
    """Async wrapper around the docker executable."""

    def __init__(self, executable: str = "docker"):
        self.executable = executable

    async def run(self, *args: str, timeout: float | None = None) -> CommandResult:
        """Run a docker command and capture its output.

        Args:
            args: docker sub-command and arguments
            timeout: Optional timeout in seconds

        Returns:
            CommandResult (a timeout yields returncode -1)

        Raises:
            ResourceError: If the docker executable is missing.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ResourceError(
                message="Docker not found. Is Docker installed?",
                data={"command": [self.executable, *args]},
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return CommandResult(-1, "", f"docker {args[0]} timed out after {timeout}s")
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        return CommandResult(
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def check(
        self,
        *args: str,
        container_name: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run a docker command and return its stripped stdout.

        Raises:
            ResourceError: If the command exits non-zero.
        """
        result = await self.run(*args, timeout=timeout)
        if not result.ok:
            raise map_docker_error(list(args), result.stderr, container_name)
        return result.stdout.strip()

    async def stream(self, *args: str, on_line: Callable[[str], None]) -> int:
        """Run a long-lived docker command, feeding each output line to on_line."""
        proc = await asyncio.create_subprocess_exec(
            self.executable,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                on_line(line.decode(errors="replace").rstrip())
            return await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise


def parse_port_output(output: str) -> dict[str, int]:
    """Parse `docker port` output into {"8545/tcp": host_port}.

    Lines look like "8545/tcp -> 0.0.0.0:32768"; IPv6 duplicates are ignored.
    """
    ports: dict[str, int] = {}
    for line in output.splitlines():
        if "->" not in line:
            continue
        key, _, address = (part.strip() for part in line.partition("->"))
        _, _, port = address.rpartition(":")
        if key not in ports and port.isdigit():
            ports[key] = int(port)
    return ports


def host_user() -> str | None:
    """uid:gid of the current user, for containers writing into bind mounts."""
    if not hasattr(os, "getuid"):
        return None
    return f"{os.getuid()}:{os.getgid()}"


def _file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            digest.update(chunk)
    return digest.hexdigest()


class DockerManager:
    """Own the docker network and containers of one deployment.

    Every container started through start_service is tracked until
    shutdown() stops and removes it. shutdown() runs on success, failure and
    interruption alike, and is bounded by teardown_timeout.
    """

    def __init__(
        self,
        network_name: str,
        network_mode: NetworkMode = NetworkMode.BRIDGE,
        no_cleanup: bool = False,
        cli: DockerCLI | None = None,
        teardown_timeout: float = DOCKER_TEARDOWN_TIMEOUT,
        stop_timeout: int = STOP_CONTAINER_TIMEOUT,
    ):
        """Initialize the manager.

        Args:
            network_name: Name of the docker network to create or reuse.
            network_mode: Bridge (isolated network) or host networking.
            no_cleanup: Leave containers and network in place on shutdown.
            cli: DockerCLI used for every docker call.
            teardown_timeout: Total wall-clock budget for shutdown (seconds).
            stop_timeout: Grace period passed to `docker stop` (seconds).
        """
        self.network_name = network_name
        self.network_mode = network_mode
        self.no_cleanup = no_cleanup
        self.cli = cli or DockerCLI()
        self.teardown_timeout = teardown_timeout
        self.stop_timeout = stop_timeout

        self.network_id: str | None = None
        # container_id -> container_name, in start order
        self.containers: dict[str, str] = {}
        self._log_tasks: list[asyncio.Task] = []
        self._closed = False

    async def __aenter__(self) -> DockerManager:
        await self.connect()
        await self.create_network()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def is_host_mode(self) -> bool:
        return self.network_mode == NetworkMode.HOST

    async def connect(self) -> str:
        """Verify the docker daemon answers.

        Returns:
            Docker server version.
        """
        version = await self.cli.check("version", "--format", "{{.Server.Version}}", timeout=10)
        logger.debug("Connected to docker daemon %s", version)
        return version

    # ── Network ──

    async def create_network(self) -> str | None:
        """Create the deployment network, reusing it if it already exists.

        Returns:
            Network id, or None in host mode.
        """
        if self.is_host_mode:
            logger.info("Host network mode: skipping docker network creation")
            return None

        existing = await self.cli.run("network", "inspect", "--format", "{{.Id}}", self.network_name)
        if existing.ok:
            self.network_id = existing.stdout.strip()
            logger.info("Docker network %s already exists, reusing it", self.network_name)
            return self.network_id

        self.network_id = await self.cli.check("network", "create", "--driver", "bridge", self.network_name)
        logger.info("Created docker network %s", self.network_name)
        return self.network_id

    async def remove_network(self) -> None:
        """Remove the deployment network (best effort)."""
        if self.network_id is None:
            return
        try:
            result = await self.cli.run("network", "rm", self.network_name)
            if not result.ok:
                logger.debug("Network removal failed (ignored): %s", result.stderr.strip())
        except ResourceError as e:
            logger.debug("Network removal failed (ignored): %s", e)
        self.network_id = None

    # ── Images ──

    async def image_exists(self, image_ref: str) -> bool:
        result = await self.cli.run("image", "inspect", image_ref, timeout=10)
        return result.ok

    async def pull_image(self, image: str, tag: str) -> str:
        """Pull an image unless it is already available locally.

        Returns:
            The "image:tag" reference.
        """
        image_ref = f"{image}:{tag}"
        if await self.image_exists(image_ref):
            logger.debug("Image %s already available locally, skipping pull", image_ref)
            return image_ref

        logger.info("Pulling image %s", image_ref)
        await self.cli.check("pull", image_ref)
        return image_ref

    async def build_local_image(self, binary_path: str | Path, service_name: str) -> str:
        """Wrap a local binary into an image tagged by the binary's hash.

        The build is skipped when an image with the same hash tag exists.

        Returns:
            The "kupcake-<service>-local:<hash>" reference.
        """
        path = Path(binary_path).expanduser()
        if not path.is_file():
            raise ConfigError(
                message=f"Binary not found: {path}",
                data={"binary": str(path), "service": service_name},
            )

        image_ref = f"kupcake-{service_name}-local:{_file_sha256(path)[:12]}"
        if await self.image_exists(image_ref):
            logger.debug("Local image %s already exists, skipping build", image_ref)
            return image_ref

        logger.info("Building local image %s from %s", image_ref, path)
        await self.pull_image(LOCAL_BINARY_BASE_IMAGE, LOCAL_BINARY_BASE_TAG)

        with tempfile.TemporaryDirectory(prefix="kupcake-build-") as context_dir:
            context = Path(context_dir)
            shutil.copy2(path, context / "binary")
            (context / "Dockerfile").write_text(LOCAL_BINARY_DOCKERFILE)
            await self.cli.check("build", "-t", image_ref, str(context))

        return image_ref

    async def ensure_image(self, image: DockerImage, service_name: str) -> str:
        """Make an image available locally (pull or build).

        Returns:
            Image reference to create containers from.
        """
        if image.is_local_binary:
            return await self.build_local_image(image.binary, image.binary_name or service_name)
        return await self.pull_image(image.image, image.tag or "latest")

    # ── Containers ──

    def _create_args(self, name: str, config: ServiceConfig, image_ref: str) -> list[str]:
        args = ["create", "--name", name]

        if self.is_host_mode:
            args += ["--network", "host"]
        else:
            args += ["--network", self.network_name]
            for mapping in config.ports:
                args += ["-p", mapping.publish_arg()]

        for bind in config.binds:
            args += ["-v", bind]
        for key, value in config.env.items():
            args += ["-e", f"{key}={value}"]
        if config.user:
            args += ["--user", config.user]

        cmd = list(config.cmd)
        if config.entrypoint:
            args += ["--entrypoint", config.entrypoint[0]]
            cmd = list(config.entrypoint[1:]) + cmd

        return args + [image_ref, *cmd]

    async def start_service(
        self,
        name: str,
        config: ServiceConfig,
        options: StartOptions | None = None,
    ) -> ContainerHandle:
        """Create, start and track a container.

        Args:
            name: Container name (any stale container with this name is removed).
            config: Container configuration.
            options: Log streaming and wait behaviour.

        Returns:
            ContainerHandle with bound host ports resolved.

        Raises:
            ResourceError: If the image, create or start step fails, or a
                waited-on container exits non-zero.
        """
        options = options or StartOptions()
        image_ref = await self.ensure_image(config.image, name)

        # A container left over from a previous run would block the name
        await self.cli.run("rm", "-f", name)

        container_id = await self.cli.check(
            *self._create_args(name, config, image_ref), container_name=name
        )
        self.containers[container_id] = name
        await self.cli.check("start", container_id, container_name=name)
        logger.debug("Started container %s (%s)", name, container_id[:12])

        if options.stream_logs:
            self._log_tasks.append(asyncio.create_task(self._stream_logs(container_id, name)))

        handle = ContainerHandle(container_id=container_id, container_name=name)

        if options.wait:
            handle.exit_code = await self.wait_for_container(container_id, name)
            if handle.exit_code != 0:
                tail = await self.container_logs(container_id, tail=LOG_TAIL_LINES)
                raise ResourceError(
                    message=f"Container '{name}' exited with code {handle.exit_code}",
                    data={"container_name": name, "exit_code": handle.exit_code, "logs": tail},
                )
            if options.collect_logs:
                handle.logs = await self.container_logs(container_id)
            return handle

        handle.bound_ports = await self.get_bound_ports(container_id, config.ports)
        return handle

    async def wait_for_container(self, container_id: str, name: str | None = None) -> int:
        """Block until a container exits and return its exit code."""
        output = await self.cli.check("wait", container_id, container_name=name)
        try:
            return int(output.splitlines()[-1])
        except (IndexError, ValueError):
            raise ResourceError(
                message=f"Unexpected output from docker wait for '{name or container_id}': {output!r}",
                data={"container_id": container_id},
            )

    async def container_logs(self, container_id: str, tail: int | None = None) -> str:
        """Combined stdout/stderr of a container."""
        args = ["logs"]
        if tail is not None:
            args += ["--tail", str(tail)]
        result = await self.cli.run(*args, container_id)
        return (result.stdout + result.stderr).strip()

    async def _stream_logs(self, container_id: str, name: str) -> None:
        try:
            await self.cli.stream(
                "logs",
                "-f",
                container_id,
                on_line=lambda line: container_logger.debug(
                    "%s | %s", name, line, extra={"container_name": name}
                ),
            )
        except asyncio.CancelledError:
            raise
        except OSError as e:
            logger.warning("Log stream for %s ended: %s", name, e)

    async def get_bound_ports(self, container_id: str, mappings: list[PortMapping]) -> dict[str, int]:
        """Resolve the host ports bound for a container.

        In host mode every container port is reachable as-is on localhost.
        """
        if self.is_host_mode:
            return {m.key: m.container_port for m in mappings}
        if not mappings:
            return {}
        output = await self.cli.check("port", container_id)
        return parse_port_output(output)

    async def is_running(self, name: str) -> bool:
        """Whether a container with this name exists and is running."""
        result = await self.cli.run("inspect", "--format", "{{.State.Running}}", name, timeout=10)
        return result.ok and result.stdout.strip() == "true"

    # ── URLs ──

    @staticmethod
    def build_http_url(host: str, port: int) -> str:
        return f"http://{host}:{port}/"

    @staticmethod
    def build_ws_url(host: str, port: int) -> str:
        return f"ws://{host}:{port}/"

    def internal_http_url(self, container_name: str, port: int) -> str:
        """URL other containers use to reach a service."""
        host = "localhost" if self.is_host_mode else container_name
        return self.build_http_url(host, port)

    def internal_ws_url(self, container_name: str, port: int) -> str:
        host = "localhost" if self.is_host_mode else container_name
        return self.build_ws_url(host, port)

    @staticmethod
    def host_http_url(handle: ContainerHandle, container_port: int) -> str | None:
        """URL the host uses to reach a service, or None if unpublished."""
        port = handle.host_port(container_port)
        return None if port is None else DockerManager.build_http_url("localhost", port)

    @staticmethod
    def host_ws_url(handle: ContainerHandle, container_port: int) -> str | None:
        port = handle.host_port(container_port)
        return None if port is None else DockerManager.build_ws_url("localhost", port)

    # ── Teardown ──

    async def stop_and_remove(self, container_id: str) -> None:
        """Stop and force-remove a container; failures are ignored."""
        name = self.containers.get(container_id, container_id[:12])
        try:
            result = await self.cli.run("stop", "-t", str(self.stop_timeout), container_id)
            if not result.ok:
                logger.debug("Stopping %s failed (ignored): %s", name, result.stderr.strip())
            result = await self.cli.run("rm", "-f", container_id)
            if not result.ok:
                logger.debug("Removing %s failed (ignored): %s", name, result.stderr.strip())
        except ResourceError as e:
            logger.debug("Cleanup of %s failed (ignored): %s", name, e)

    async def _teardown(self) -> None:
        container_ids = list(self.containers)
        logger.info("Cleaning up %d container(s)...", len(container_ids))
        await asyncio.gather(*(self.stop_and_remove(cid) for cid in container_ids))
        self.containers.clear()
        await self.remove_network()

    async def shutdown(self) -> None:
        """Stop and remove everything this manager created.

        No-op when no_cleanup is set or after a previous shutdown. Exceeding
        the teardown budget is logged, never raised.
        """
        if self._closed:
            return
        self._closed = True

        log_tasks, self._log_tasks = self._log_tasks, []
        for task in log_tasks:
            task.cancel()
        await asyncio.gather(*log_tasks, return_exceptions=True)

        if self.no_cleanup:
            logger.info("Cleanup of docker containers on exit is disabled")
            return

        if not self.containers and self.network_id is None:
            logger.debug("No containers or networks to clean up")
            return

        try:
            await asyncio.wait_for(self._teardown(), timeout=self.teardown_timeout)
            logger.info("Cleanup completed")
        except asyncio.TimeoutError:
            logger.error(
                "Cleanup did not finish within %ss; remaining containers: %s",
                self.teardown_timeout,
                ", ".join(self.containers.values()) or "none",
            )


async def cleanup_by_prefix(prefix: str, cli: DockerCLI | None = None) -> CleanupResult:
    """Remove containers whose name starts with prefix, and the prefix network.

    Used to clean up detached or crashed deployments.

    Args:
        prefix: Container name prefix (the deployment network name)
        cli: DockerCLI to use

    Returns:
        CleanupResult listing what was removed.
    """
    cli = cli or DockerCLI()
    result = CleanupResult()

    output = await cli.check("ps", "-a", "--filter", f"name={prefix}", "--format", "{{.ID}} {{.Names}}")
    targets: list[tuple[str, str]] = []
    for line in output.splitlines():
        container_id, _, name = line.strip().partition(" ")
        if name.startswith(prefix):
            targets.append((container_id, name))

    async def _remove(container_id: str, name: str) -> str | None:
        await cli.run("stop", "-t", str(STOP_CONTAINER_TIMEOUT), container_id)
        removed = await cli.run("rm", "-f", container_id)
        return name if removed.ok else None

    removed = await asyncio.gather(*(_remove(cid, name) for cid, name in targets))
    result.containers_removed = [name for name in removed if name]

    network = f"{prefix}-network"
    if (await cli.run("network", "inspect", network)).ok:
        if (await cli.run("network", "rm", network)).ok:
            result.network_removed = network

    return result

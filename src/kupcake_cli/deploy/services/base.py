"""Service adapter interface.

Every service is a dataclass describing one container (or, for stage
services, a group of containers) and an async start() that turns it into a
handle. The pipeline only sees StageService; component services are
started by the stage that owns them with their upstream handles passed in
explicitly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import fields
from pathlib import Path, PurePosixPath
from typing import Any, ClassVar

from ...errors import ConfigError
from ..docker import DockerImage
from ..stages import ServiceContext, Stage

# Where each container sees its host config directory
CONTAINER_CONFIG_PATH = PurePosixPath("/data")


class ServiceSpec:
    """Serialization shared by service dataclasses.

    Fields are plain values except `image` (a DockerImage); subclasses with
    nested specs override to_dict/from_dict.
    """

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, DockerImage):
                value = value.to_dict()
            elif isinstance(value, (list, tuple)):
                value = list(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Any:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(
                message=f"Unknown fields for {cls.__name__}: {', '.join(unknown)}",
                data={"service": cls.__name__, "fields": unknown},
            )
        kwargs = dict(data)
        if isinstance(kwargs.get("image"), dict):
            kwargs["image"] = DockerImage.from_dict(kwargs["image"])
        return cls(**kwargs)


class StageService(ABC):
    """A service that owns one pipeline stage."""

    SERVICE_NAME: ClassVar[str]
    STAGE: ClassVar[Stage]

    @abstractmethod
    async def start(self, ctx: Any) -> Any:
        """Start the service with its stage context and return its handle."""


def container_path(*parts: str) -> str:
    """Path inside a container's /data mount."""
    return str(CONTAINER_CONFIG_PATH.joinpath(*parts))


def config_bind(host_dir: Path) -> str:
    """Bind spec mounting a host config directory at /data."""
    return f"{host_dir.resolve()}:{CONTAINER_CONFIG_PATH}:rw"


def entrypoint_for(image: DockerImage, executable: str) -> list[str] | None:
    """Entrypoint override for images without one.

    Images built from local binaries already have the binary as entrypoint.
    """
    return None if image.is_local_binary else [executable]


__all__ = [
    "CONTAINER_CONFIG_PATH",
    "ServiceContext",
    "ServiceSpec",
    "Stage",
    "StageService",
    "config_bind",
    "container_path",
    "entrypoint_for",
]

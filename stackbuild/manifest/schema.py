"""Pydantic models for manifest build sections.

This module defines the Pydantic models validating the build section of a
manifest loaded from YAML/JSON, and converts a validated manifest into the
immutable BuildPlan consumed by the orchestrator.

Only the build section and the manifest identity are read; every other
top-level section (deploy, dev, ...) is ignored.
"""

import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stackbuild.builds.plan import (
    DEFAULT_DOCKERFILE,
    BuildArg,
    BuildPlan,
    BuildUnit,
    VolumeMount,
)

UNIT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")

# Manifest types describing a compose/stack file rather than a native manifest
COMPOSE_TYPES = frozenset({"compose", "stack"})


class VolumeMountSchema(BaseModel):
    """Schema for a host path copied into the image.

    Attributes:
        local_path: Path on the host (relative to the manifest or absolute).
        remote_path: Path inside the image (must start with /).
    """

    model_config = ConfigDict(extra="forbid")

    local_path: str = Field(min_length=1, description="Path on the host")
    remote_path: str = Field(description="Destination path in the image")

    @field_validator("remote_path")
    @classmethod
    def validate_remote_path(cls, v: str) -> str:
        """Validate remote path starts with /."""
        if not v.startswith("/"):
            raise ValueError("remote_path must start with '/'")
        return v


class BuildUnitSchema(BaseModel):
    """Schema for one entry of the build section.

    Attributes:
        context: Build context directory.
        dockerfile: Dockerfile path; omitted means 'Dockerfile', empty
            means the unit has no Dockerfile.
        image: Explicit image reference.
        args: Build arguments, as 'NAME=value' strings or a mapping.
        secrets: Build secrets (name -> local path).
        target: Target stage.
        cache_from: Cache source images.
        volumes: Host paths copied into the image, as 'local:remote'
            strings or mappings.
        depends_on: Units built before this one.
    """

    model_config = ConfigDict(extra="forbid")

    context: str = Field(default=".", description="Build context directory")
    dockerfile: str | None = Field(default=None, description="Dockerfile path")
    image: str = Field(default="", description="Explicit image reference")
    args: list[tuple[str, str]] = Field(default_factory=list, description="Build args")
    secrets: dict[str, str] = Field(default_factory=dict, description="Build secrets")
    target: str = Field(default="", description="Target stage")
    cache_from: list[str] = Field(default_factory=list, description="Cache sources")
    volumes: list[VolumeMountSchema] = Field(
        default_factory=list, description="Volume mounts"
    )
    depends_on: list[str] = Field(default_factory=list, description="Dependencies")

    @field_validator("args", mode="before")
    @classmethod
    def normalize_args(cls, v: Any) -> Any:
        """Accept args as a list of 'NAME=value' strings or a mapping."""
        if v is None:
            return []
        if isinstance(v, dict):
            return [(str(k), "" if val is None else str(val)) for k, val in v.items()]
        if isinstance(v, list):
            result = []
            for item in v:
                if not isinstance(item, str):
                    raise ValueError(f"build args must be 'NAME=value' strings, got {item!r}")
                name, _, value = item.partition("=")
                if not name:
                    raise ValueError(f"build arg has no name: {item!r}")
                result.append((name, value))
            return result
        return v

    @field_validator("cache_from", "depends_on", mode="before")
    @classmethod
    def normalize_string_list(cls, v: Any) -> Any:
        """Accept a single string where a list is expected."""
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("volumes", mode="before")
    @classmethod
    def normalize_volumes(cls, v: Any) -> Any:
        """Accept volumes as 'local:remote' strings or mappings."""
        if v is None:
            return []
        if not isinstance(v, list):
            return v
        result = []
        for item in v:
            if isinstance(item, str):
                local_path, sep, remote_path = item.rpartition(":")
                if not sep:
                    raise ValueError(
                        f"volume must have the form 'local:remote', got {item!r}"
                    )
                result.append({"local_path": local_path, "remote_path": remote_path})
            else:
                result.append(item)
        return result

    def to_unit(self) -> BuildUnit:
        """Convert to an immutable BuildUnit."""
        dockerfile = DEFAULT_DOCKERFILE if self.dockerfile is None else self.dockerfile
        return BuildUnit(
            context=self.context,
            dockerfile=dockerfile,
            image=self.image,
            args=tuple(BuildArg(name, value) for name, value in self.args),
            secrets=dict(self.secrets),
            target=self.target,
            cache_from=tuple(self.cache_from),
            volumes=tuple(
                VolumeMount(local_path=v.local_path, remote_path=v.remote_path)
                for v in self.volumes
            ),
            depends_on=tuple(self.depends_on),
        )


class ManifestSchema(BaseModel):
    """Schema for a manifest file.

    Attributes:
        name: Manifest name, used as the image namespace root.
        type: Manifest type; 'compose' and 'stack' mark compose-derived plans.
        build: Build units by name, in file order.
    """

    model_config = ConfigDict(extra="ignore")

    name: Annotated[
        str | None, Field(default=None, description="Manifest name", max_length=255)
    ]
    type: Literal["manifest", "compose", "stack"] = Field(
        default="manifest", description="Manifest type"
    )
    build: dict[str, BuildUnitSchema] = Field(
        default_factory=dict, description="Build section"
    )

    @field_validator("build", mode="before")
    @classmethod
    def normalize_build(cls, v: Any) -> Any:
        """Treat an empty build section as no units."""
        if v is None:
            return {}
        return v

    @field_validator("build")
    @classmethod
    def validate_unit_names(
        cls, v: dict[str, BuildUnitSchema]
    ) -> dict[str, BuildUnitSchema]:
        """Validate unit names match a safe pattern."""
        for name in v:
            if not UNIT_NAME_PATTERN.match(name):
                raise ValueError(
                    f"unit name must match pattern {UNIT_NAME_PATTERN.pattern}, "
                    f"got '{name}'"
                )
        return v

    def to_plan(self, default_name: str = "") -> BuildPlan:
        """Convert to an immutable BuildPlan.

        Args:
            default_name: Name used when the manifest does not declare one.

        Returns:
            BuildPlan with units in file order.
        """
        return BuildPlan(
            name=self.name or default_name,
            units={name: unit.to_unit() for name, unit in self.build.items()},
            compose=self.type in COMPOSE_TYPES,
        )


__all__ = [
    "COMPOSE_TYPES",
    "BuildUnitSchema",
    "ManifestSchema",
    "VolumeMountSchema",
]

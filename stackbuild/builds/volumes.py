"""Volume mount staging for the two-stage build.

This module handles:
- Filtering requested volume mounts down to paths that exist on disk
- Staging mount content into a temporary build context
- Rendering the Dockerfile that layers the mounts onto a base image

The staged directory is used as the context of the second build stage.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stackbuild.builds.plan import BuildUnit, VolumeMount

logger = logging.getLogger(__name__)

STAGED_VOLUMES_DIR = "volumes"
STAGED_DOCKERFILE = "Dockerfile"


class VolumeStagingError(Exception):
    """Raised when volume mount staging fails."""

    def __init__(self, message: str, code: str = "volume_staging_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class StagedVolume:
    """A volume mount copied into the staging context.

    Attributes:
        source: Context-relative path of the staged content.
        destination: Path inside the image.
    """

    source: str
    destination: str


def _resolve_local(local_path: str, base_path: Path | None) -> Path:
    path = Path(local_path).expanduser()
    if not path.is_absolute() and base_path is not None:
        path = base_path / path
    return path


def accessible_volume_mounts(
    unit: BuildUnit, base_path: Path | None = None
) -> list[VolumeMount]:
    """Return the requested mounts whose local path exists.

    Missing paths are dropped silently.

    Args:
        unit: Build unit.
        base_path: Directory relative local paths are resolved against.

    Returns:
        Accessible mounts in declaration order.
    """
    accessible: list[VolumeMount] = []
    for volume in unit.volumes:
        if _resolve_local(volume.local_path, base_path).exists():
            accessible.append(volume)
        else:
            logger.debug("Skipping missing volume mount path %s", volume.local_path)
    return accessible


def stage_directory(source_dir: Path, dest_dir: Path) -> None:
    """Stage an entire directory into the staging context.

    Symlinks are resolved by copying their content; links pointing outside
    the source tree are rejected.

    Args:
        source_dir: Source directory path.
        dest_dir: Destination directory in the staging area.

    Raises:
        VolumeStagingError: If staging fails.
    """
    source_dir_resolved = source_dir.resolve()
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        for item in sorted(source_dir.rglob("*")):
            rel_path = item.relative_to(source_dir)
            dest_path = dest_dir / rel_path

            if item.is_symlink():
                target = item.resolve()
                try:
                    target.relative_to(source_dir_resolved)
                except ValueError:
                    raise VolumeStagingError(
                        f"Symlink {item} points outside source tree: {target}",
                        code="symlink_escape",
                    ) from None

            if item.is_dir() and not item.is_symlink():
                dest_path.mkdir(parents=True, exist_ok=True)
            elif item.is_file():
                dest_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(item.resolve(), dest_path)

    except OSError as e:
        raise VolumeStagingError(
            f"Failed to stage directory {source_dir}: {e}",
            code="dir_stage_error",
        ) from e


def stage_volume_mounts(
    staging_dir: Path,
    volumes: list[VolumeMount],
    base_path: Path | None = None,
) -> list[StagedVolume]:
    """Copy volume mount content into a staging context.

    Each mount is staged under ``volumes/<index>``.

    Args:
        staging_dir: Directory to stage content into.
        volumes: Accessible volume mounts.
        base_path: Directory relative local paths are resolved against.

    Returns:
        Staged volumes in declaration order.

    Raises:
        VolumeStagingError: If staging fails.
    """
    staged: list[StagedVolume] = []
    for index, volume in enumerate(volumes):
        source = _resolve_local(volume.local_path, base_path)
        rel_dest = f"{STAGED_VOLUMES_DIR}/{index}"
        dest = staging_dir / rel_dest

        logger.debug("Staging volume mount %s -> %s", source, volume.remote_path)
        if source.is_dir():
            stage_directory(source, dest)
        else:
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)
            except OSError as e:
                raise VolumeStagingError(
                    f"Failed to stage file {source} -> {dest}: {e}",
                    code="file_stage_error",
                ) from e

        staged.append(StagedVolume(source=rel_dest, destination=volume.remote_path))
    return staged


def render_volume_dockerfile(from_image: str, staged: list[StagedVolume]) -> str:
    """Render the Dockerfile layering staged volumes onto a base image.

    Args:
        from_image: Base image reference.
        staged: Volumes staged in the context.

    Returns:
        Dockerfile content.
    """
    lines = [f"FROM {from_image}"]
    lines.extend(f"COPY {volume.source} {volume.destination}" for volume in staged)
    return "\n".join(lines) + "\n"


def prepare_volume_context(
    staging_dir: Path,
    from_image: str,
    unit: BuildUnit,
    base_path: Path | None = None,
) -> Path:
    """Stage the build context of the volume-mount stage.

    Args:
        staging_dir: Empty directory to use as build context.
        from_image: Image the volumes are layered onto.
        unit: Unit requesting the mounts.
        base_path: Directory relative local paths are resolved against.

    Returns:
        Path of the rendered Dockerfile.

    Raises:
        VolumeStagingError: If staging fails.
    """
    volumes = accessible_volume_mounts(unit, base_path)
    staged = stage_volume_mounts(staging_dir, volumes, base_path)
    dockerfile = staging_dir / STAGED_DOCKERFILE
    dockerfile.write_text(render_volume_dockerfile(from_image, staged), encoding="utf-8")
    return dockerfile


__all__ = [
    "StagedVolume",
    "VolumeStagingError",
    "accessible_volume_mounts",
    "prepare_volume_context",
    "render_volume_dockerfile",
    "stage_directory",
    "stage_volume_mounts",
]

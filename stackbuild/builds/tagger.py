"""Image tag strategies.

The human-facing tag of a synthesized image is a fixed marker ('okteto',
or 'okteto-with-volume-mounts' for the volume-augmented variant) so that
downstream references do not churn with every change. Fingerprints are
only used as tags of the cache references.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Protocol

from stackbuild.registry import DEV_REGISTRY_PREFIX, GLOBAL_REGISTRY_PREFIX

if TYPE_CHECKING:
    from stackbuild.builds.plan import BuildUnit
    from stackbuild.config import BuilderConfig

DEFAULT_IMAGE_TAG = "okteto"
VOLUME_MOUNT_IMAGE_TAG = "okteto-with-volume-mounts"
VOLUME_MOUNT_SUFFIX = "with-volume-mounts"

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9-]+")


def sanitize_name(name: str) -> str:
    """Normalize a plan or unit name for use in a repository path."""
    return _INVALID_NAME_CHARS.sub("-", name.lower()).strip("-")


def repository_name(plan_name: str, unit_name: str) -> str:
    """Return '<plan>-<unit>' with both parts sanitized."""
    return f"{sanitize_name(plan_name)}-{sanitize_name(unit_name)}"


class Tagger(Protocol):
    """Maps a unit to the image references it is built and cached under."""

    def reference(
        self,
        plan_name: str,
        unit_name: str,
        unit: BuildUnit,
        fingerprint: str,
        compose: bool = False,
    ) -> str:
        """Return the image reference a fresh build is tagged with."""
        ...

    def cache_references(
        self, plan_name: str, unit_name: str, fingerprint: str
    ) -> list[str]:
        """Return the references a build with this fingerprint is cached under."""
        ...


class ImageTagger:
    """Tag strategy for units built from a Dockerfile."""

    image_tag = DEFAULT_IMAGE_TAG

    def __init__(self, config: BuilderConfig) -> None:
        self.config = config

    def _fingerprint_tag(self, fingerprint: str) -> str:
        return fingerprint

    def reference(
        self,
        plan_name: str,
        unit_name: str,
        unit: BuildUnit,
        fingerprint: str,
        compose: bool = False,
    ) -> str:
        if not self.config.is_managed:
            return unit.image
        if unit.image and not compose:
            return unit.image
        name = repository_name(plan_name, unit_name)
        return f"{DEV_REGISTRY_PREFIX}/{name}:{self.image_tag}"

    def cache_references(
        self, plan_name: str, unit_name: str, fingerprint: str
    ) -> list[str]:
        if not fingerprint or not self.config.is_managed:
            return []
        name = repository_name(plan_name, unit_name)
        tag = self._fingerprint_tag(fingerprint)
        references: list[str] = []
        if self.config.has_global_access and self.config.is_clean_project:
            references.append(f"{GLOBAL_REGISTRY_PREFIX}/{name}:{tag}")
        references.append(f"{DEV_REGISTRY_PREFIX}/{name}:{tag}")
        return references


class VolumeMountImageTagger(ImageTagger):
    """Tag strategy for the volume-augmented variant of a unit."""

    image_tag = VOLUME_MOUNT_IMAGE_TAG

    def _fingerprint_tag(self, fingerprint: str) -> str:
        return f"{fingerprint}-{VOLUME_MOUNT_SUFFIX}"

    def reference(
        self,
        plan_name: str,
        unit_name: str,
        unit: BuildUnit,
        fingerprint: str,
        compose: bool = False,
    ) -> str:
        name = repository_name(plan_name, unit_name)
        return f"{DEV_REGISTRY_PREFIX}/{name}:{self.image_tag}"


def select_tagger(unit: BuildUnit, config: BuilderConfig) -> ImageTagger:
    """Pick the tag strategy for a unit."""
    if unit.has_volume_mounts():
        return VolumeMountImageTagger(config)
    return ImageTagger(config)


__all__ = [
    "DEFAULT_IMAGE_TAG",
    "VOLUME_MOUNT_IMAGE_TAG",
    "ImageTagger",
    "Tagger",
    "VolumeMountImageTagger",
    "repository_name",
    "sanitize_name",
    "select_tagger",
]

"""Cache lookup for already-built fingerprints.

A cache miss is a normal outcome and is never surfaced as an error.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from stackbuild.registry import NotFoundError, RegistryError

if TYPE_CHECKING:
    from stackbuild.builds.tagger import Tagger
    from stackbuild.config import BuilderConfig
    from stackbuild.registry import Registry

logger = logging.getLogger(__name__)


def is_cache_check_enabled(config: BuilderConfig, no_cache: bool = False) -> bool:
    """Whether cached builds may be reused.

    Uncommitted changes disable the optimization since the commit part of
    the fingerprint would not reflect local edits.
    """
    return not no_cache and config.smart_builds_enabled and config.is_clean_project


class ImageChecker:
    """Looks up images built from a given fingerprint.

    Args:
        config: Builder capability snapshot.
        registry: Registry collaborator.
        tagger: Tag strategy providing the cache references.
    """

    def __init__(self, config: BuilderConfig, registry: Registry, tagger: Tagger) -> None:
        self.config = config
        self.registry = registry
        self.tagger = tagger

    def check_if_built(
        self, plan_name: str, unit_name: str, fingerprint: str
    ) -> tuple[str | None, bool]:
        """Check whether an image for the fingerprint already exists.

        Args:
            plan_name: Plan name.
            unit_name: Unit name.
            fingerprint: Service fingerprint of the unit.

        Returns:
            Tuple of (image reference with digest, is_hit).
        """
        if not fingerprint:
            return None, False

        for reference in self.tagger.cache_references(plan_name, unit_name, fingerprint):
            try:
                image = self.registry.resolve_digest(reference)
            except NotFoundError:
                logger.debug("Image %s not found", reference)
                continue
            except RegistryError as e:
                logger.warning("Could not check image %s: %s", reference, e)
                continue
            logger.debug("Found image %s for fingerprint %s", image, fingerprint[:16])
            return image, True

        return None, False


__all__ = ["ImageChecker", "is_cache_check_enabled"]

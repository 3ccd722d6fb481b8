"""Exported environment for built units.

Every built unit publishes five variables under an uppercase prefix derived
from its name, e.g. for unit 'api' with the default prefix:
OKTETO_BUILD_API_IMAGE, _REGISTRY, _REPOSITORY, _TAG and _SHA.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stackbuild.registry import ImageReference

logger = logging.getLogger(__name__)

EXPORTED_SUFFIXES = ("IMAGE", "REGISTRY", "REPOSITORY", "TAG", "SHA")

_INVALID_KEY_CHARS = re.compile(r"[^A-Z0-9_]")


def unit_key_prefix(unit_name: str, env_prefix: str = "OKTETO_BUILD") -> str:
    """Return the variable prefix of a unit, e.g. 'OKTETO_BUILD_MY_API'."""
    sanitized = _INVALID_KEY_CHARS.sub("_", unit_name.upper())
    return f"{env_prefix}_{sanitized}" if env_prefix else sanitized


class EnvironmentExporter:
    """Single owner of the variables exported by a build.

    All access goes through the methods of this class, which share one lock.

    Args:
        env_prefix: Prefix prepended to every unit key.
        initial: Variables present before any unit is built.
    """

    def __init__(
        self, env_prefix: str = "OKTETO_BUILD", initial: dict[str, str] | None = None
    ) -> None:
        self.env_prefix = env_prefix
        self._values: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def export(self, unit_name: str, reference: ImageReference) -> dict[str, str]:
        """Record the variables of a built unit.

        A reference without digest exports its tag as SHA, and a digest-only
        reference exports its digest as TAG, so no value is ever empty.

        Args:
            unit_name: Unit name.
            reference: Final image reference of the unit.

        Returns:
            The variables written for the unit.
        """
        prefix = unit_key_prefix(unit_name, self.env_prefix)
        values = {
            f"{prefix}_IMAGE": str(reference),
            f"{prefix}_REGISTRY": reference.registry,
            f"{prefix}_REPOSITORY": reference.repository,
            f"{prefix}_TAG": reference.tag or reference.digest,
            f"{prefix}_SHA": reference.digest or reference.tag,
        }
        with self._lock:
            self._values.update(values)
        logger.debug("Exported variables for unit '%s': %s", unit_name, sorted(values))
        return values

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def snapshot(self) -> dict[str, str]:
        """Return a copy of every exported variable."""
        with self._lock:
            return dict(self._values)

    def unit_values(self, unit_name: str) -> dict[str, str]:
        """Return the variables exported for one unit."""
        prefix = unit_key_prefix(unit_name, self.env_prefix)
        with self._lock:
            return {
                f"{prefix}_{suffix}": self._values[f"{prefix}_{suffix}"]
                for suffix in EXPORTED_SUFFIXES
                if f"{prefix}_{suffix}" in self._values
            }


__all__ = ["EXPORTED_SUFFIXES", "EnvironmentExporter", "unit_key_prefix"]

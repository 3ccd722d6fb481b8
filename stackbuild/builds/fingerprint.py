"""Fingerprint computation for build units.

This module handles:
- The commit fingerprint over a unit's declared inputs and the current commit
- The build context fingerprint over the files the build would see
- The service fingerprint combining both, used as the cache key

Units whose materialized inputs are byte-identical always produce
byte-identical fingerprints.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from stackbuild.builds.context import compute_context_hash, compute_path_hash
from stackbuild.repository import RepositoryError

if TYPE_CHECKING:
    from stackbuild.builds.plan import BuildUnit
    from stackbuild.repository import Repository

logger = logging.getLogger(__name__)


def render_unit_payload(unit: BuildUnit) -> str:
    """Render the declared inputs of a unit.

    Build arguments keep their declaration order; secrets are sorted by
    name. Empty sections still emit their label.

    Args:
        unit: Unit with already-expanded argument values.

    Returns:
        'target:...;build_args:...;secrets:...;context:...;dockerfile:...;image:...;'
    """
    parts = [f"target:{unit.target};"]

    parts.append("build_args:")
    parts.extend(f"{arg.name}={arg.value};" for arg in unit.args)
    if not unit.args:
        parts.append(";")

    parts.append("secrets:")
    parts.extend(f"{name}={unit.secrets[name]};" for name in sorted(unit.secrets))
    if not unit.secrets:
        parts.append(";")

    parts.append(f"context:{unit.context};")
    parts.append(f"dockerfile:{unit.dockerfile};")
    parts.append(f"image:{unit.image};")
    return "".join(parts)


def render_commit_payload(commit: str, unit: BuildUnit) -> str:
    """Render the commit fingerprint input string.

    Args:
        commit: Commit id, empty if unknown.
        unit: Unit with already-expanded argument values.

    Returns:
        'commit:<sha>;' followed by render_unit_payload().
    """
    return f"commit:{commit};{render_unit_payload(unit)}"


def _sha256(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ServiceHasher:
    """Computes fingerprints for build units.

    Commit lookups and context hashes are memoized for the lifetime of the
    hasher, which is one build invocation.

    Args:
        repository: Repository collaborator providing the commit id.
        environ: Variables used to expand build arguments before hashing
            (defaults to os.environ).
        base_path: Directory relative build contexts are resolved against.
    """

    def __init__(
        self,
        repository: Repository,
        environ: Mapping[str, str] | None = None,
        base_path: Path | None = None,
    ) -> None:
        self.repository = repository
        self.environ = environ
        self.base_path = base_path
        self._commit: str | None = None
        self._context_cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def commit_id(self) -> str:
        """Return the current commit id, or '' when it cannot be determined."""
        with self._lock:
            if self._commit is None:
                try:
                    self._commit = self.repository.commit_id()
                except RepositoryError as e:
                    logger.debug("Could not get commit id: %s", e)
                    self._commit = ""
            return self._commit

    def _materialize(
        self, unit: BuildUnit, environ: Mapping[str, str] | None = None
    ) -> BuildUnit:
        if environ is None:
            environ = self.environ if self.environ is not None else os.environ
        return unit.expand_args(environ)

    def _resolve(self, path: str) -> Path:
        resolved = Path(path or ".").expanduser()
        if not resolved.is_absolute() and self.base_path is not None:
            resolved = self.base_path / resolved
        return resolved

    def hash_project_commit(
        self, unit: BuildUnit, environ: Mapping[str, str] | None = None
    ) -> str:
        """Fingerprint a unit's declared inputs together with the commit.

        Args:
            unit: Build unit.
            environ: Variables to expand build arguments against, overriding
                the hasher's default.

        Returns:
            SHA-256 hex digest.
        """
        payload = render_commit_payload(
            self.commit_id(), self._materialize(unit, environ)
        )
        return _sha256(payload)

    def hash_build_context(self, unit: BuildUnit) -> str:
        """Fingerprint the content of a unit's build context.

        Args:
            unit: Build unit.

        Returns:
            SHA-256 hex digest of the context files.
        """
        context_dir = self._resolve(unit.context)
        key = str(context_dir.resolve())
        with self._lock:
            cached = self._context_cache.get(key)
        if cached is not None:
            return cached

        digest = compute_context_hash(context_dir)
        with self._lock:
            self._context_cache[key] = digest
        return digest

    def _volumes_payload(self, unit: BuildUnit) -> str:
        # Missing mount paths are dropped from the build, so they are not hashed
        parts = ["volumes:"]
        for volume in unit.volumes:
            local = self._resolve(volume.local_path)
            if local.exists():
                parts.append(f"{volume.remote_path}={compute_path_hash(local)};")
        if len(parts) == 1:
            parts.append(";")
        return "".join(parts)

    def hash_service(
        self, unit: BuildUnit, environ: Mapping[str, str] | None = None
    ) -> str:
        """Compute the cache key of a unit.

        Combines the commit fingerprint, the build context fingerprint, the
        content of the unit's volume mounts and its materialized build
        parameters.

        Args:
            unit: Build unit.
            environ: Variables to expand build arguments against, overriding
                the hasher's default.

        Returns:
            SHA-256 hex digest used to look up and tag cached images.
        """
        payload = (
            f"commit:{self.hash_project_commit(unit, environ)};"
            f"context:{self.hash_build_context(unit)};"
            f"{self._volumes_payload(unit)}"
            f"{render_unit_payload(self._materialize(unit, environ))}"
        )
        return _sha256(payload)


__all__ = [
    "ServiceHasher",
    "render_commit_payload",
    "render_unit_payload",
]

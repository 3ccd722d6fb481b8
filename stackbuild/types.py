"""Shared type definitions for stackbuild.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum


class UnitStatus(str, Enum):
    """Scheduling state of a build unit."""

    PENDING = "pending"
    BUILDING = "building"
    BUILT = "built"
    FAILED = "failed"


@dataclass
class BuildOutcome:
    """Result record emitted for every selected build unit.

    Attributes:
        name: Unit name.
        status: Final scheduling state of the unit.
        built: Whether a fresh image was built.
        cache_hit: Whether the image was reused from the registry.
        reference: Final image reference (with digest when known).
        error: Error message if the unit failed.
        commit_fingerprint: Fingerprint over declared inputs + commit.
        context_fingerprint: Fingerprint over the build context content.
        cache_hit_duration: Seconds spent in the cache lookup.
        build_duration: Seconds spent building.
    """

    name: str
    status: UnitStatus = UnitStatus.PENDING
    built: bool = False
    cache_hit: bool = False
    reference: str | None = None
    error: str | None = None
    commit_fingerprint: str = ""
    context_fingerprint: str = ""
    cache_hit_duration: float = 0.0
    build_duration: float = 0.0

    @property
    def success(self) -> bool:
        """Whether the unit reached the built state."""
        return self.status == UnitStatus.BUILT

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "status": self.status.value,
            "built": self.built,
            "cache_hit": self.cache_hit,
            "reference": self.reference,
            "error": self.error,
            "commit_fingerprint": self.commit_fingerprint,
            "context_fingerprint": self.context_fingerprint,
            "cache_hit_duration": round(self.cache_hit_duration, 3),
            "build_duration": round(self.build_duration, 3),
        }


OutcomeTracker = Callable[[Sequence[BuildOutcome]], None]


__all__ = [
    "BuildOutcome",
    "OutcomeTracker",
    "UnitStatus",
]

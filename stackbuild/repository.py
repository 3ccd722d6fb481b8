"""Source-control state consumed by the fingerprint generator.

Only two facts are needed from the repository: the current commit id and
whether the working tree has uncommitted changes.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 30


class RepositoryError(Exception):
    """Raised when repository state cannot be determined."""

    def __init__(self, message: str, code: str = "repository_error") -> None:
        super().__init__(message)
        self.code = code


class Repository(Protocol):
    """Repository collaborator."""

    def commit_id(self) -> str:
        """Return the current commit id.

        Raises:
            RepositoryError: If the commit cannot be determined.
        """
        ...

    def is_clean(self) -> bool:
        """Whether the working tree has no uncommitted changes."""
        ...


class GitRepository:
    """Repository backed by the ``git`` command line.

    Args:
        path: Any directory inside the working tree.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or Path.cwd()

    def _git(self, *args: str) -> str:
        cmd = ["git", *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.path,
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise RepositoryError(
                f"{' '.join(cmd)} failed: {e.stderr.strip()}",
                code="git_error",
            ) from e
        except subprocess.TimeoutExpired as e:
            raise RepositoryError(
                f"{' '.join(cmd)} timed out after {GIT_TIMEOUT}s",
                code="git_timeout",
            ) from e
        except OSError as e:
            raise RepositoryError(f"Failed to run git: {e}", code="git_missing") from e
        return result.stdout

    def commit_id(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    def is_clean(self) -> bool:
        return self._git("status", "--porcelain").strip() == ""


__all__ = ["GitRepository", "Repository", "RepositoryError"]

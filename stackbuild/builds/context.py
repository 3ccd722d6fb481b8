"""Build context hashing.

This module handles:
- Loading .dockerignore patterns for a build context
- Computing a deterministic hash of the files a build would see

Local edits invalidate the context hash even when the commit is unchanged.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import stat
from pathlib import Path

logger = logging.getLogger(__name__)

DOCKERIGNORE_FILENAME = ".dockerignore"


def load_ignore_patterns(context_dir: Path) -> list[str]:
    """Load ignore patterns from a context's .dockerignore.

    Args:
        context_dir: Build context directory.

    Returns:
        Patterns in file order; blank lines and comments are skipped.
    """
    ignore_file = context_dir / DOCKERIGNORE_FILENAME
    if not ignore_file.is_file():
        return []

    patterns: list[str] = []
    for line in ignore_file.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        negated = line.startswith("!")
        body = line[1:].strip() if negated else line
        body = body.strip("/")
        if body.startswith("./"):
            body = body[2:]
        if body:
            patterns.append(f"!{body}" if negated else body)
    return patterns


def _pattern_matches(rel_path: str, pattern: str) -> bool:
    """Match a path, or any of its parent directories, against a pattern."""
    if fnmatch.fnmatchcase(rel_path, pattern):
        return True
    if pattern.startswith("**/") and fnmatch.fnmatchcase(rel_path, pattern[3:]):
        return True
    parts = rel_path.split("/")
    for i in range(1, len(parts)):
        if fnmatch.fnmatchcase("/".join(parts[:i]), pattern):
            return True
    return False


def is_ignored(rel_path: str, patterns: list[str]) -> bool:
    """Whether a context-relative POSIX path is excluded.

    The last matching pattern wins; ``!`` patterns re-include paths.

    Args:
        rel_path: Path relative to the context directory.
        patterns: Patterns from load_ignore_patterns().

    Returns:
        True if the path is excluded from the context.
    """
    ignored = False
    for pattern in patterns:
        negated = pattern.startswith("!")
        body = pattern[1:] if negated else pattern
        if _pattern_matches(rel_path, body):
            ignored = not negated
    return ignored


def compute_context_hash(context_dir: Path, apply_ignore: bool = True) -> str:
    """Compute a deterministic hash of a build context.

    The hash is computed over:
    - Sorted file paths (relative to the context, POSIX separators)
    - File contents
    - File modes (lower 9 bits: rwxrwxrwx)

    Files excluded by .dockerignore are skipped unless ``apply_ignore`` is
    false. A missing context hashes to the digest of no entries.

    Args:
        context_dir: Build context directory.
        apply_ignore: Whether to honor the context's .dockerignore.

    Returns:
        SHA-256 hex digest of the context.
    """
    hasher = hashlib.sha256()

    if not context_dir.is_dir():
        logger.debug("Build context %s does not exist", context_dir)
        return hasher.hexdigest()

    patterns = load_ignore_patterns(context_dir) if apply_ignore else []

    for path in sorted(context_dir.rglob("*")):
        if not path.is_file():
            continue

        rel_path = path.relative_to(context_dir).as_posix()
        if is_ignored(rel_path, patterns):
            continue

        mode = stat.S_IMODE(path.stat().st_mode)

        # Hash: path\0mode\0content\0
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(f"{mode:o}".encode())
        hasher.update(b"\0")
        hasher.update(path.read_bytes())
        hasher.update(b"\0")

    return hasher.hexdigest()


def compute_path_hash(path: Path) -> str:
    """Hash a single file or a directory tree.

    Every file of a directory is hashed, .dockerignore included, since
    volume mounts are copied without ignore rules.

    Args:
        path: File or directory.

    Returns:
        SHA-256 hex digest of the file bytes, or of the whole directory tree.
    """
    if path.is_dir():
        return compute_context_hash(path, apply_ignore=False)
    return hashlib.sha256(path.read_bytes()).hexdigest()


__all__ = [
    "DOCKERIGNORE_FILENAME",
    "compute_context_hash",
    "compute_path_hash",
    "is_ignored",
    "load_ignore_patterns",
]

"""Shell-style variable expansion for build arguments.

Supports ``$VAR``, ``${VAR}``, ``${VAR-default}`` (default when unset),
``${VAR:-default}`` (default when unset or empty) and ``$$`` as an escaped
dollar sign. Unknown variables expand to the empty string.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping

_VARIABLE_PATTERN = re.compile(
    r"\$(?:"
    r"(?P<escaped>\$)"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_]*)"
    r"|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?-)(?P<default>[^}]*))?\}"
    r")"
)


def expand_vars(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Expand variable references in a string.

    Args:
        value: String possibly containing variable references.
        environ: Variables to expand against (defaults to os.environ).

    Returns:
        The expanded string.
    """
    if "$" not in value:
        return value
    if environ is None:
        environ = os.environ

    def _replace(match: re.Match[str]) -> str:
        if match.group("escaped"):
            return "$"
        name = match.group("name") or match.group("braced")
        current = environ.get(name)
        op = match.group("op")
        if op == "-" and current is None:
            return match.group("default")
        if op == ":-" and not current:
            return match.group("default")
        return current or ""

    return _VARIABLE_PATTERN.sub(_replace, value)


__all__ = ["expand_vars"]

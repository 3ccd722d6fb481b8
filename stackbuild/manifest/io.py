"""Manifest loading.

This module provides helpers for loading an already-located manifest file
(YAML or JSON) and turning its build section into a BuildPlan.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stackbuild.builds.plan import BuildPlan
from stackbuild.builds.tagger import sanitize_name
from stackbuild.manifest.schema import ManifestSchema

logger = logging.getLogger(__name__)


class ManifestError(Exception):
    """Raised when a manifest cannot be loaded."""

    def __init__(self, message: str, code: str = "manifest_error") -> None:
        super().__init__(message)
        self.code = code


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the content is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_manifest_data(data: dict[str, Any], default_name: str = "") -> BuildPlan:
    """Validate manifest data and convert it to a BuildPlan.

    Args:
        data: Dictionary containing manifest data.
        default_name: Plan name used when the manifest has none.

    Returns:
        BuildPlan for the manifest's build section.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    return ManifestSchema.model_validate(data).to_plan(default_name)


def load_manifest(path: Path) -> BuildPlan:
    """Load a manifest file (YAML or JSON) into a BuildPlan.

    Files ending in .json are parsed as JSON, everything else as YAML.
    A manifest without a name is named after its directory.

    Args:
        path: Path to the manifest file.

    Returns:
        BuildPlan for the manifest's build section.

    Raises:
        ManifestError: If the file cannot be read or is invalid.
    """
    try:
        if path.suffix.lower() == ".json":
            data = load_json(path)
        else:
            data = load_yaml(path)
    except FileNotFoundError as e:
        raise ManifestError(f"Manifest not found: {path}", code="manifest_not_found") from e
    except (OSError, yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        raise ManifestError(
            f"Failed to parse manifest {path}: {e}", code="manifest_parse_error"
        ) from e

    default_name = sanitize_name(path.resolve().parent.name)
    try:
        plan = parse_manifest_data(data, default_name)
    except ValidationError as e:
        raise ManifestError(
            f"Invalid manifest {path}: {e}", code="manifest_invalid"
        ) from e

    logger.debug("Loaded manifest '%s' with %d build units", plan.name, len(plan.units))
    return plan


__all__ = [
    "ManifestError",
    "load_json",
    "load_manifest",
    "load_yaml",
    "parse_manifest_data",
]

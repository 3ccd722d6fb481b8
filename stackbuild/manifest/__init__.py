"""Manifest loading module.

This module handles:
- Validation of manifest build sections (YAML/JSON)
- Conversion of a validated manifest into a BuildPlan
"""

from stackbuild.manifest.io import (
    ManifestError,
    load_json,
    load_manifest,
    load_yaml,
    parse_manifest_data,
)
from stackbuild.manifest.schema import (
    BuildUnitSchema,
    ManifestSchema,
    VolumeMountSchema,
)

__all__ = [
    # Schema
    "BuildUnitSchema",
    "ManifestSchema",
    "VolumeMountSchema",
    # IO functions
    "ManifestError",
    "load_json",
    "load_manifest",
    "load_yaml",
    "parse_manifest_data",
]

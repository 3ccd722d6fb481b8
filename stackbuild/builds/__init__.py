"""Build orchestration module.

This module handles:
- Build plan model and dependency validation
- Fingerprint computation for build units
- Image tag strategies and cache lookup
- Volume mount staging for two-stage builds
- Running the build engine and exporting image references
"""

from stackbuild.builds.plan import BuildArg, BuildPlan, BuildUnit, VolumeMount

__all__ = ["BuildArg", "BuildPlan", "BuildUnit", "VolumeMount"]

# Lazy imports for submodules to avoid circular imports
# Access via stackbuild.builds.orchestrator, stackbuild.builds.fingerprint, etc.

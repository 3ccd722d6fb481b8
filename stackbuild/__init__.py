"""stackbuild - Build orchestration for development-environment manifests.

This package builds the container images declared in a manifest's build
section, resolving inter-service dependencies, reusing images whose inputs
are unchanged and publishing the resulting image references.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

"""Configuration settings for stackbuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

The builder itself never reads settings lazily: a BuilderConfig snapshot is
resolved once and threaded through every component.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from stackbuild.registry import RegistryError
from stackbuild.repository import RepositoryError

if TYPE_CHECKING:
    from stackbuild.registry import Registry
    from stackbuild.repository import Repository

logger = logging.getLogger(__name__)


def _default_logs_dir() -> Path:
    """Return the default build logs directory."""
    return Path.home() / ".local" / "share" / "stackbuild" / "logs"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STACKBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STACKBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Registry
    registry_url: str = Field(
        default="registry.local",
        description="Host of the registry backing the private and global namespaces",
    )
    namespace: str = Field(
        default="dev",
        description="Private per-user namespace inside the registry",
    )
    global_namespace: str = Field(
        default="global",
        description="Shared namespace used to deduplicate identical builds",
    )
    registry_token: str | None = Field(
        default=None,
        description="Bearer token sent to the registry (anonymous if not set)",
    )
    registry_insecure: bool = Field(
        default=False,
        description="Talk plain HTTP to the registry",
    )

    # Operational modes
    managed: bool = Field(
        default=False,
        description="Running in a managed context with private/global registries",
    )
    smart_builds_enabled: bool = Field(
        default=True,
        description="Skip builds whose fingerprint is already in the registry",
    )
    env_prefix: str = Field(
        default="OKTETO_BUILD",
        description="Prefix of the variables exported for every built unit",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    logs_dir: Path = Field(
        default_factory=_default_logs_dir,
        description="Directory for per-build log files",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=1,
        ge=1,
        le=10,
        description="Maximum independent units built at the same time",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single image build",
    )
    registry_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for registry requests",
    )


@dataclass(frozen=True)
class BuilderConfig:
    """Capability snapshot captured once per orchestrator.

    Attributes:
        smart_builds_enabled: Whether fingerprint cache lookups are allowed.
        has_global_access: Whether builds may be pushed to the global namespace.
        is_clean_project: Whether the source tree has no uncommitted changes.
        is_managed: Whether the execution context is managed.
    """

    smart_builds_enabled: bool = True
    has_global_access: bool = False
    is_clean_project: bool = False
    is_managed: bool = False

    @classmethod
    def resolve(
        cls,
        settings: Settings,
        registry: Registry,
        repository: Repository,
    ) -> BuilderConfig:
        """Resolve the capability snapshot from settings and collaborators.

        Lookup failures degrade to the conservative value (no global
        access, dirty project) instead of failing the build.

        Args:
            settings: Application settings.
            registry: Registry collaborator.
            repository: Repository collaborator.

        Returns:
            Immutable BuilderConfig.
        """
        try:
            has_global_access = settings.managed and registry.has_global_push_access()
        except RegistryError as e:
            logger.info("Could not check global registry access: %s", e)
            has_global_access = False

        try:
            is_clean = repository.is_clean()
        except RepositoryError as e:
            logger.info("Could not check repository status: %s", e)
            is_clean = False

        return cls(
            smart_builds_enabled=settings.smart_builds_enabled,
            has_global_access=has_global_access,
            is_clean_project=is_clean,
            is_managed=settings.managed,
        )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    The registry token is never rendered.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2, exclude={"registry_token"})


__all__ = ["BuilderConfig", "Settings", "get_settings", "print_settings_json"]

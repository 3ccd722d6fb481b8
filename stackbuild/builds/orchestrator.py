"""Build orchestration module.

This module provides the high-level build API:
- BuildOrchestrator.build(): main entry point, dependency-aware and cache-aware
- Validation of the requested units before anything runs
- Round-based scheduling, sequential or on a thread pool
- Two-stage builds layering volume mounts onto the Dockerfile image
- Export of the resulting image references for later units

A unit is built only after every unit it depends on has been built (or
reused from the registry). The first failure stops the build; units that
never started stay pending.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from collections import ChainMap
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from stackbuild.builds.checker import ImageChecker, is_cache_check_enabled
from stackbuild.builds.environment import EnvironmentExporter, unit_key_prefix
from stackbuild.builds.executor import (
    BuildExecutionError,
    DockerBuildExecutor,
    ExecutorOptions,
)
from stackbuild.builds.fingerprint import ServiceHasher
from stackbuild.builds.plan import (
    NoUnitsToBuildError,
    PlanValidationError,
    SchedulingError,
    select_units,
    topological_order,
)
from stackbuild.builds.tagger import ImageTagger, VolumeMountImageTagger, select_tagger
from stackbuild.builds.volumes import VolumeStagingError, prepare_volume_context
from stackbuild.config import BuilderConfig, Settings, get_settings
from stackbuild.registry import HttpRegistry, RegistryError
from stackbuild.repository import GitRepository
from stackbuild.types import BuildOutcome, UnitStatus

if TYPE_CHECKING:
    from stackbuild.builds.executor import BuildExecutor
    from stackbuild.builds.plan import BuildPlan, BuildUnit
    from stackbuild.registry import Registry
    from stackbuild.repository import Repository
    from stackbuild.types import OutcomeTracker

logger = logging.getLogger(__name__)

# Passed to every fresh build so Dockerfiles can tell cached runs apart
SMART_BUILD_ENV_VAR = "STACKBUILD_SMART_BUILDS_ENABLED"

MANAGED_CONTEXT_HINT = "Please connect to a managed context and try again"


class ConfigurationError(Exception):
    """Raised when a unit cannot be built in the current context."""

    def __init__(
        self, message: str, hint: str = "", code: str = "configuration"
    ) -> None:
        super().__init__(message)
        self.hint = hint
        self.code = code


class UnitBuildError(Exception):
    """Raised when building a single unit fails.

    The underlying error is available as ``__cause__``.
    """

    def __init__(
        self, unit: str, cause: Exception, code: str = "unit_build_failed"
    ) -> None:
        super().__init__(f"error building unit '{unit}': {cause}")
        self.unit = unit
        self.code = code


class BuildCancelledError(Exception):
    """Raised when a build is cancelled before completing."""

    def __init__(self, message: str = "Build cancelled", code: str = "cancelled") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class BuildOptions:
    """Per-invocation build options.

    Attributes:
        units: Units requested by the caller; empty means every unit.
        no_cache: Skip the registry cache lookup.
        tag: Image reference overriding the computed one.
        target: Target stage overriding the unit's.
        cache_from: Cache sources overriding the unit's.
        secrets: Build secrets overriding the unit's.
    """

    units: list[str] = field(default_factory=list)
    no_cache: bool = False
    tag: str = ""
    target: str = ""
    cache_from: list[str] = field(default_factory=list)
    secrets: dict[str, str] = field(default_factory=dict)

    @property
    def has_unit_flags(self) -> bool:
        """Whether any option only valid for a single unit is set."""
        return bool(self.tag or self.target or self.cache_from or self.secrets)


@dataclass
class BuildReport:
    """Result of a successful build.

    Attributes:
        outcomes: One outcome per selected unit, in build order.
        environment: Variables exported by the built units.
        plan: The plan with build arguments expanded against the
            exported variables.
    """

    outcomes: list[BuildOutcome]
    environment: dict[str, str]
    plan: BuildPlan

    def outcome(self, name: str) -> BuildOutcome:
        """Return the outcome of a unit.

        Raises:
            KeyError: If the unit was not part of the build.
        """
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        raise KeyError(name)


class BuildOrchestrator:
    """Builds the units of a plan in dependency order.

    Args:
        executor: Engine that builds and pushes images.
        registry: Registry collaborator.
        repository: Repository collaborator.
        config: Capability snapshot for this orchestrator.
        settings: Application settings; loaded from the environment if not
            provided.
        tracker: Optional callback receiving the outcomes of every build.
        environ: Ambient variables build arguments are expanded against
            (defaults to os.environ).
        base_path: Directory relative paths in the plan are resolved
            against (defaults to the working directory).
    """

    def __init__(
        self,
        executor: BuildExecutor,
        registry: Registry,
        repository: Repository,
        config: BuilderConfig,
        settings: Settings | None = None,
        tracker: OutcomeTracker | None = None,
        environ: Mapping[str, str] | None = None,
        base_path: Path | None = None,
    ) -> None:
        self.executor = executor
        self.registry = registry
        self.repository = repository
        self.config = config
        self.settings = settings if settings is not None else get_settings()
        self.tracker = tracker
        self.environ: Mapping[str, str] = environ if environ is not None else os.environ
        self.base_path = base_path
        self._owned_registry: HttpRegistry | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        base_path: Path | None = None,
        tracker: OutcomeTracker | None = None,
    ) -> BuildOrchestrator:
        """Create an orchestrator wired to the default collaborators.

        Args:
            settings: Application settings; loaded from the environment if
                not provided.
            base_path: Directory of the manifest.
            tracker: Optional outcome callback.

        Returns:
            Orchestrator using git, the HTTP registry and docker buildx.
        """
        if settings is None:
            settings = get_settings()
        registry = HttpRegistry(settings)
        repository = GitRepository(base_path)
        config = BuilderConfig.resolve(settings, registry, repository)
        executor = DockerBuildExecutor(settings, expand_tag=registry.expand)
        logger.debug("Resolved builder config: %s", config)
        orchestrator = cls(
            executor,
            registry,
            repository,
            config,
            settings=settings,
            tracker=tracker,
            base_path=base_path,
        )
        orchestrator._owned_registry = registry
        return orchestrator

    def close(self) -> None:
        """Release the registry client created by from_settings()."""
        if self._owned_registry is not None:
            self._owned_registry.close()
            self._owned_registry = None

    # Validation

    def validate(self, plan: BuildPlan, options: BuildOptions | None = None) -> list[str]:
        """Validate a build request without running anything.

        Args:
            plan: Build plan.
            options: Build options.

        Returns:
            Selected unit names in a valid build order.

        Raises:
            NoUnitsToBuildError: If there is nothing to build.
            PlanValidationError: On unknown units, misused flags or units
                exporting under the same variable prefix.
            SchedulingError: On missing dependencies or cycles.
            ConfigurationError: If a unit cannot be built in this context.
        """
        options = options or BuildOptions()
        if not plan.units:
            raise NoUnitsToBuildError()

        selected = select_units(plan, options.units)
        if not selected:
            raise NoUnitsToBuildError()

        if len(selected) != 1 and options.has_unit_flags:
            raise PlanValidationError(
                "Flags --tag, --target, --cache-from and --secret are only "
                "allowed when building a single unit",
                code="flags_require_single_unit",
            )

        order = topological_order(plan.units, selected)
        self._validate_export_prefixes(order)
        for name in order:
            self._validate_unit(name, plan[name], options)
        return order

    def _validate_export_prefixes(self, names: list[str]) -> None:
        owners: dict[str, str] = {}
        for name in names:
            prefix = unit_key_prefix(name, self.settings.env_prefix)
            owner = owners.setdefault(prefix, name)
            if owner != name:
                raise PlanValidationError(
                    f"Units '{owner}' and '{name}' would both export variables "
                    f"as {prefix}_*, rename one of them",
                    code="export_prefix_collision",
                )

    def _validate_unit(self, name: str, unit: BuildUnit, options: BuildOptions) -> None:
        if not unit.has_dockerfile() and not unit.has_volume_mounts():
            raise ConfigurationError(
                f"'build.{name}' defines neither a Dockerfile nor volume mounts"
            )
        if unit.has_volume_mounts() and not self.config.is_managed:
            raise ConfigurationError(
                f"Build with volume mounts is not supported for unit '{name}' "
                "outside a managed context",
                hint=MANAGED_CONTEXT_HINT,
            )
        if not self.config.is_managed and not (unit.image or options.tag):
            raise ConfigurationError(
                f"'build.{name}.image' is required if your context is not managed",
                hint=MANAGED_CONTEXT_HINT,
            )
        if not unit.has_dockerfile() and not (unit.image or options.tag):
            raise ConfigurationError(
                f"'build.{name}.image' is required to add volume mounts "
                "without a Dockerfile"
            )

    # Scheduling

    def build(
        self,
        plan: BuildPlan,
        options: BuildOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> BuildReport:
        """Build the selected units of a plan.

        Args:
            plan: Build plan.
            options: Build options.
            cancel: Event that cancels the build when set.

        Returns:
            BuildReport with outcomes and exported variables.

        Raises:
            NoUnitsToBuildError: If there is nothing to build.
            PlanValidationError: On unknown units or misused flags.
            SchedulingError: If the dependency graph cannot be scheduled.
            ConfigurationError: If a unit cannot be built in this context.
            UnitBuildError: If building a unit fails.
            BuildCancelledError: If the build is cancelled.
        """
        options = options or BuildOptions()
        order = self.validate(plan, options)
        logger.info("Images to build: [%s]", ", ".join(order))

        exporter = EnvironmentExporter(self.settings.env_prefix)
        hasher = ServiceHasher(
            self.repository, environ=self.environ, base_path=self.base_path
        )
        outcomes = {name: BuildOutcome(name=name) for name in order}

        try:
            self._run_rounds(plan, order, options, exporter, hasher, outcomes, cancel)
        finally:
            self._track(list(outcomes.values()))

        environment = exporter.snapshot()
        return BuildReport(
            outcomes=list(outcomes.values()),
            environment=environment,
            plan=plan.expand(ChainMap(environment, dict(self.environ))),
        )

    def _track(self, outcomes: list[BuildOutcome]) -> None:
        if self.tracker is None:
            return
        try:
            self.tracker(outcomes)
        except Exception:
            logger.exception("Outcome tracker failed")

    def _run_rounds(
        self,
        plan: BuildPlan,
        order: list[str],
        options: BuildOptions,
        exporter: EnvironmentExporter,
        hasher: ServiceHasher,
        outcomes: dict[str, BuildOutcome],
        cancel: threading.Event | None,
    ) -> None:
        built: set[str] = set()
        pending = list(order)

        def run_unit(name: str) -> None:
            self._build_unit(
                plan, name, options, exporter, hasher, outcomes[name], cancel
            )

        while pending:
            self._check_cancelled(cancel)
            ready = [
                name
                for name in pending
                if all(dep in built for dep in plan[name].depends_on)
            ]
            if not ready:
                raise SchedulingError(
                    f"No unit can be built, waiting on dependencies: {pending}",
                    units=pending,
                    code="no_progress",
                )

            for name in pending:
                if name not in ready:
                    logger.debug(
                        "Unit '%s' waits for its dependencies (%s)",
                        name,
                        ", ".join(plan[name].depends_on),
                    )

            self._build_round(ready, run_unit, cancel)
            built.update(ready)
            pending = [name for name in pending if name not in built]

    def _build_round(
        self,
        ready: list[str],
        run_unit: Callable[[str], None],
        cancel: threading.Event | None,
    ) -> None:
        """Build one round of independent units.

        Every unit of the round either completes or the first error is
        raised once the round has drained.
        """
        workers = min(self.settings.max_concurrent_builds, len(ready))
        if workers <= 1:
            for name in ready:
                self._check_cancelled(cancel)
                run_unit(name)
            return

        abort = threading.Event()

        def worker(name: str) -> None:
            if abort.is_set() or (cancel is not None and cancel.is_set()):
                return
            try:
                run_unit(name)
            except Exception:
                abort.set()
                raise

        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="stackbuild"
        ) as pool:
            futures = [pool.submit(worker, name) for name in ready]

        for name, future in zip(ready, futures):
            error = future.exception()
            if error is not None:
                logger.error("Unit '%s' failed: %s", name, error)
                raise error
        self._check_cancelled(cancel)

    def _check_cancelled(self, cancel: threading.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise BuildCancelledError()

    # Units

    def _build_unit(
        self,
        plan: BuildPlan,
        name: str,
        options: BuildOptions,
        exporter: EnvironmentExporter,
        hasher: ServiceHasher,
        outcome: BuildOutcome,
        cancel: threading.Event | None,
    ) -> None:
        unit = self._effective_unit(plan[name], options)
        outcome.status = UnitStatus.BUILDING

        try:
            exported = exporter.snapshot()
            environ = ChainMap(exported, dict(self.environ))
            outcome.commit_fingerprint = hasher.hash_project_commit(unit, environ)
            outcome.context_fingerprint = hasher.hash_build_context(unit)
            fingerprint = hasher.hash_service(unit, environ)

            reference = None
            if is_cache_check_enabled(self.config, options.no_cache):
                reference = self._reuse_cached(plan, name, unit, fingerprint, hasher, outcome)

            if reference is None:
                started = time.monotonic()
                reference = self._build_unit_images(
                    plan, name, unit, fingerprint, options, exported, cancel
                )
                outcome.build_duration = time.monotonic() - started
                outcome.built = True

            exporter.export(name, self.registry.image_reference(reference))
        except BuildExecutionError as e:
            if e.code == "build_cancelled":
                outcome.status = UnitStatus.PENDING
                outcome.error = "cancelled"
                raise BuildCancelledError() from e
            self._fail(outcome, e)
            raise UnitBuildError(name, e) from e
        except (RegistryError, VolumeStagingError, OSError) as e:
            self._fail(outcome, e)
            raise UnitBuildError(name, e) from e

        outcome.status = UnitStatus.BUILT
        outcome.reference = reference
        logger.info("Unit '%s' available as %s", name, reference)

    def _effective_unit(self, unit: BuildUnit, options: BuildOptions) -> BuildUnit:
        """Apply the per-invocation overrides so they reach the fingerprint."""
        return unit.copy(
            image=options.tag or unit.image,
            target=options.target or unit.target,
            secrets=dict(options.secrets or unit.secrets),
            cache_from=tuple(options.cache_from) or unit.cache_from,
        )

    def _fail(self, outcome: BuildOutcome, error: Exception) -> None:
        outcome.status = UnitStatus.FAILED
        outcome.error = str(error)
        logger.error("Failed to build unit '%s': %s", outcome.name, error)

    def _reuse_cached(
        self,
        plan: BuildPlan,
        name: str,
        unit: BuildUnit,
        fingerprint: str,
        hasher: ServiceHasher,
        outcome: BuildOutcome,
    ) -> str | None:
        """Return the cached image of a unit, cloned to the private registry."""
        checker = ImageChecker(self.config, self.registry, select_tagger(unit, self.config))
        started = time.monotonic()
        image, hit = checker.check_if_built(plan.name, name, fingerprint)
        outcome.cache_hit_duration = time.monotonic() - started
        if not hit or image is None:
            return None

        outcome.cache_hit = True
        logger.info(
            "Skipping build of '%s' image because it's already built for commit %s",
            name,
            hasher.commit_id() or "unknown",
        )
        if self.registry.is_shared_registry(image):
            logger.debug("Copying image '%s' from global to private registry", name)
            # Keep the cache tag so the next lookup hits the private registry
            _, tag = self.registry.repository_and_tag(image)
            if tag.startswith("sha256:"):
                tag = fingerprint
            image = self.registry.clone_to_private(image, tag)
        return image

    def _build_unit_images(
        self,
        plan: BuildPlan,
        name: str,
        unit: BuildUnit,
        fingerprint: str,
        options: BuildOptions,
        exported: dict[str, str],
        cancel: threading.Event | None,
    ) -> str:
        reference = ""
        if unit.has_dockerfile():
            reference = self._build_from_dockerfile(
                plan, name, unit, fingerprint, options, exported, cancel
            )
        if unit.has_volume_mounts():
            reference = self._add_volume_mounts(
                plan, name, unit, fingerprint, options, reference, cancel
            )
        return reference

    def _resolve(self, path: str) -> Path:
        resolved = Path(path or ".").expanduser()
        if not resolved.is_absolute() and self.base_path is not None:
            resolved = self.base_path / resolved
        return resolved

    def _cache_tags(
        self, tagger: ImageTagger, plan_name: str, name: str, fingerprint: str
    ) -> list[str]:
        if not self.config.smart_builds_enabled:
            return []
        return tagger.cache_references(plan_name, name, fingerprint)

    def _build_from_dockerfile(
        self,
        plan: BuildPlan,
        name: str,
        unit: BuildUnit,
        fingerprint: str,
        options: BuildOptions,
        exported: dict[str, str],
        cancel: threading.Event | None,
    ) -> str:
        logger.info("Building unit '%s' from Dockerfile", name)
        tagger = ImageTagger(self.config)
        compose = plan.compose and not (
            unit.image and self.registry.is_private_registry(unit.image)
        )
        tag = options.tag or tagger.reference(
            plan.name, name, unit, fingerprint, compose=compose
        )

        extra_args = {SMART_BUILD_ENV_VAR: str(self.config.smart_builds_enabled).lower()}
        extra_args.update(exported)
        materialized = unit.expand_args(ChainMap(exported, dict(self.environ)))
        materialized = materialized.with_extra_args(extra_args)

        context_dir = self._resolve(unit.context)
        dockerfile = Path(unit.dockerfile).expanduser()
        if not dockerfile.is_absolute():
            dockerfile = context_dir / dockerfile

        build_options = ExecutorOptions(
            context=str(context_dir),
            dockerfile=str(dockerfile),
            tag=tag,
            extra_tags=self._cache_tags(tagger, plan.name, name, fingerprint),
            build_args=[str(arg) for arg in materialized.args],
            secrets=dict(unit.secrets),
            target=unit.target,
            cache_from=list(unit.cache_from),
            name=name,
        )
        self.executor.execute(build_options, cancel)
        return self.registry.resolve_digest(tag)

    def _add_volume_mounts(
        self,
        plan: BuildPlan,
        name: str,
        unit: BuildUnit,
        fingerprint: str,
        options: BuildOptions,
        base_image: str,
        cancel: threading.Event | None,
    ) -> str:
        logger.info("Including volume hosts for unit '%s'", name)
        from_image = options.tag or base_image or unit.image
        from_image = str(self.registry.image_reference(from_image))

        tagger = VolumeMountImageTagger(self.config)
        tag = tagger.reference(plan.name, name, unit, fingerprint)

        with tempfile.TemporaryDirectory(prefix="stackbuild-volumes-") as tmp:
            staging_dir = Path(tmp)
            dockerfile = prepare_volume_context(
                staging_dir, from_image, unit, self.base_path
            )
            build_options = ExecutorOptions(
                context=str(staging_dir),
                dockerfile=str(dockerfile),
                tag=tag,
                extra_tags=self._cache_tags(tagger, plan.name, name, fingerprint),
                name=f"{name}-volumes",
            )
            self.executor.execute(build_options, cancel)
        return self.registry.resolve_digest(tag)


__all__ = [
    "SMART_BUILD_ENV_VAR",
    "BuildCancelledError",
    "BuildOptions",
    "BuildOrchestrator",
    "BuildReport",
    "ConfigurationError",
    "UnitBuildError",
]

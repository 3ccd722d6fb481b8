"""Build executor adapter.

This module handles:
- The options passed to the engine that builds and pushes an image
- The BuildExecutor protocol consumed by the orchestrator
- A default executor composing `docker buildx build --push` commands,
  capturing output to log files and enforcing timeouts and cancellation
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from stackbuild.config import Settings

logger = logging.getLogger(__name__)

# Interval between cancellation checks while a build runs (seconds)
POLL_INTERVAL = 0.5


class BuildExecutionError(Exception):
    """Raised when build execution fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.log_path = log_path


@dataclass
class ExecutorOptions:
    """Options for a single image build.

    Attributes:
        context: Build context directory.
        dockerfile: Dockerfile path.
        tag: Primary image reference to push.
        extra_tags: Additional references the image is pushed under.
        build_args: Build arguments as 'NAME=value' strings, in order.
        secrets: Build secrets (id -> local path).
        target: Target stage.
        cache_from: Images used as cache sources.
        name: Unit name, used for log file naming.
    """

    context: str
    dockerfile: str
    tag: str
    extra_tags: list[str] = field(default_factory=list)
    build_args: list[str] = field(default_factory=list)
    secrets: dict[str, str] = field(default_factory=dict)
    target: str = ""
    cache_from: list[str] = field(default_factory=list)
    name: str = ""

    @property
    def tags(self) -> list[str]:
        """Every reference the image is pushed under, primary first."""
        tags = [self.tag]
        tags.extend(t for t in self.extra_tags if t != self.tag)
        return tags


class BuildExecutor(Protocol):
    """Engine that builds an image and pushes it to a registry."""

    def execute(
        self, options: ExecutorOptions, cancel: threading.Event | None = None
    ) -> None:
        """Build and push an image.

        Raises:
            BuildExecutionError: If the build fails or is cancelled.
        """
        ...


def compose_buildx_command(
    options: ExecutorOptions, expand_tag: Callable[[str], str] | None = None
) -> list[str]:
    """Compose the `docker buildx build` command for a build.

    Args:
        options: Executor options.
        expand_tag: Optional callable mapping references to pushable names.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    expand = expand_tag or (lambda image: image)
    cmd = ["docker", "buildx", "build", "--push"]

    if options.dockerfile:
        cmd.extend(["--file", options.dockerfile])

    for tag in options.tags:
        cmd.extend(["--tag", expand(tag)])

    for arg in options.build_args:
        cmd.extend(["--build-arg", arg])

    for secret_id, src in sorted(options.secrets.items()):
        cmd.extend(["--secret", f"id={secret_id},src={src}"])

    if options.target:
        cmd.extend(["--target", options.target])

    for image in options.cache_from:
        cmd.extend(["--cache-from", expand(image)])

    cmd.append(options.context or ".")
    return cmd


class DockerBuildExecutor:
    """Executor running `docker buildx build --push`.

    Args:
        settings: Application settings (logs dir, timeout).
        expand_tag: Optional callable mapping references to pushable names,
            typically HttpRegistry.expand.
    """

    def __init__(
        self, settings: Settings, expand_tag: Callable[[str], str] | None = None
    ) -> None:
        self.settings = settings
        self.expand_tag = expand_tag

    def _log_path(self, options: ExecutorOptions) -> Path:
        self.settings.logs_dir.mkdir(parents=True, exist_ok=True)
        name = options.name or "build"
        return self.settings.logs_dir / f"{name}_{uuid.uuid4().hex[:8]}.log"

    def execute(
        self, options: ExecutorOptions, cancel: threading.Event | None = None
    ) -> None:
        cmd = compose_buildx_command(options, self.expand_tag)
        cmd_str = shlex.join(cmd)
        log_path = self._log_path(options)
        timeout = self.settings.build_timeout

        logger.info("Executing build: %s", cmd_str)
        logger.info("Build log: %s", log_path)

        started_at = datetime.now(timezone.utc)
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            try:
                process = subprocess.Popen(
                    cmd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    env=dict(os.environ),
                )
            except OSError as e:
                error_message = f"Failed to execute build: {e}"
                logger.error(error_message)
                raise BuildExecutionError(
                    error_message, code="execution_error", log_path=log_path
                ) from e

            deadline = time.monotonic() + timeout
            while True:
                try:
                    exit_code = process.wait(timeout=POLL_INTERVAL)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if cancel is not None and cancel.is_set():
                    process.terminate()
                    process.wait()
                    log_file.write("\n# CANCELLED\n")
                    raise BuildExecutionError(
                        "Build cancelled",
                        exit_code=-1,
                        code="build_cancelled",
                        log_path=log_path,
                    )
                if time.monotonic() >= deadline:
                    process.kill()
                    process.wait()
                    log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
                    error_message = f"Build timed out after {timeout} seconds"
                    logger.error("%s. See log: %s", error_message, log_path)
                    raise BuildExecutionError(
                        error_message,
                        exit_code=-1,
                        code="build_timeout",
                        log_path=log_path,
                    )

            finished_at = datetime.now(timezone.utc)
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            log_file.write(f"# Duration: {duration:.1f}s\n")

        if exit_code != 0:
            error_message = f"Build failed with exit code {exit_code}"
            logger.error("%s. See log: %s", error_message, log_path)
            raise BuildExecutionError(
                error_message, exit_code=exit_code, code="build_failed", log_path=log_path
            )


__all__ = [
    "BuildExecutionError",
    "BuildExecutor",
    "DockerBuildExecutor",
    "ExecutorOptions",
    "compose_buildx_command",
]

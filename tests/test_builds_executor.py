"""Tests for builds/executor.py module.

Tests buildx command composition and execution.
Uses mocked subprocess for build execution tests.
"""

import subprocess
import threading
from unittest.mock import MagicMock, patch

import pytest

from stackbuild.builds.executor import (
    BuildExecutionError,
    DockerBuildExecutor,
    ExecutorOptions,
    compose_buildx_command,
)
from stackbuild.config import Settings


@pytest.fixture
def options() -> ExecutorOptions:
    """Create executor options with every field populated."""
    return ExecutorOptions(
        context="/src/api",
        dockerfile="/src/api/Dockerfile",
        tag="okteto.dev/test-api:okteto",
        extra_tags=["okteto.dev/test-api:abc", "okteto.dev/test-api:okteto"],
        build_args=["A=1", "B=2"],
        secrets={"npmrc": "/home/u/.npmrc"},
        target="prod",
        cache_from=["okteto.dev/test-api:cache"],
        name="api",
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings writing logs to a temporary directory."""
    return Settings(logs_dir=tmp_path / "logs", build_timeout=60)


class TestExecutorOptions:
    """Tests for ExecutorOptions."""

    def test_tags_deduplicated(self, options):
        """The primary tag should come first and not repeat."""
        assert options.tags == ["okteto.dev/test-api:okteto", "okteto.dev/test-api:abc"]


class TestComposeBuildxCommand:
    """Tests for compose_buildx_command function."""

    def test_full_command(self, options):
        """Should include every option in order."""
        cmd = compose_buildx_command(options)
        assert cmd == [
            "docker", "buildx", "build", "--push",
            "--file", "/src/api/Dockerfile",
            "--tag", "okteto.dev/test-api:okteto",
            "--tag", "okteto.dev/test-api:abc",
            "--build-arg", "A=1",
            "--build-arg", "B=2",
            "--secret", "id=npmrc,src=/home/u/.npmrc",
            "--target", "prod",
            "--cache-from", "okteto.dev/test-api:cache",
            "/src/api",
        ]  # fmt: skip

    def test_minimal_command(self):
        """Optional flags should be omitted."""
        cmd = compose_buildx_command(ExecutorOptions(context="", dockerfile="", tag="app"))
        assert cmd == ["docker", "buildx", "build", "--push", "--tag", "app", "."]

    def test_expand_tag(self, options):
        """Tags and cache sources should be expanded."""
        cmd = compose_buildx_command(
            options, lambda image: image.replace("okteto.dev", "registry.local/dev")
        )
        assert "registry.local/dev/test-api:okteto" in cmd
        assert "registry.local/dev/test-api:cache" in cmd
        assert not any(part.startswith("okteto.dev") for part in cmd)


class TestDockerBuildExecutor:
    """Tests for DockerBuildExecutor with mocked subprocess."""

    def test_successful_build(self, settings, options):
        """Should run the command and write a log file."""
        with patch("subprocess.Popen") as mock_popen:
            mock_popen.return_value.wait.return_value = 0
            DockerBuildExecutor(settings).execute(options)

            cmd = mock_popen.call_args[0][0]
            assert cmd[:4] == ["docker", "buildx", "build", "--push"]

        logs = list(settings.logs_dir.glob("api_*.log"))
        assert len(logs) == 1
        assert "# Exit code: 0" in logs[0].read_text()

    def test_failed_build(self, settings, options):
        """A non-zero exit should raise with the exit code."""
        with patch("subprocess.Popen") as mock_popen:
            mock_popen.return_value.wait.return_value = 2

            with pytest.raises(BuildExecutionError) as exc_info:
                DockerBuildExecutor(settings).execute(options)

        assert exc_info.value.code == "build_failed"
        assert exc_info.value.exit_code == 2
        assert exc_info.value.log_path is not None

    def test_missing_docker(self, settings, options):
        """A missing binary should raise an execution error."""
        with patch("subprocess.Popen", side_effect=FileNotFoundError("docker")):
            with pytest.raises(BuildExecutionError) as exc_info:
                DockerBuildExecutor(settings).execute(options)

        assert exc_info.value.code == "execution_error"

    def test_timeout(self, settings, options):
        """Should kill the build after the timeout."""
        process = MagicMock()
        process.wait.side_effect = [
            subprocess.TimeoutExpired(cmd="docker", timeout=0.5),
            -9,
        ]
        with (
            patch("subprocess.Popen", return_value=process),
            patch("stackbuild.builds.executor.time.monotonic", side_effect=[0.0, 1000.0]),
        ):
            with pytest.raises(BuildExecutionError) as exc_info:
                DockerBuildExecutor(settings).execute(options)

        assert exc_info.value.code == "build_timeout"
        process.kill.assert_called_once()

    def test_cancelled(self, settings, options):
        """Should terminate the build when cancelled."""
        process = MagicMock()
        process.wait.side_effect = [
            subprocess.TimeoutExpired(cmd="docker", timeout=0.5),
            -15,
        ]
        cancel = threading.Event()
        cancel.set()
        with patch("subprocess.Popen", return_value=process):
            with pytest.raises(BuildExecutionError) as exc_info:
                DockerBuildExecutor(settings).execute(options, cancel)

        assert exc_info.value.code == "build_cancelled"
        process.terminate.assert_called_once()

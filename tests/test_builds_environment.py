"""Tests for builds/environment.py module."""

import threading

from stackbuild.builds.environment import EnvironmentExporter, unit_key_prefix
from stackbuild.registry import ImageReference


class TestUnitKeyPrefix:
    """Tests for unit_key_prefix function."""

    def test_uppercase(self):
        """Unit names should be uppercased."""
        assert unit_key_prefix("api") == "OKTETO_BUILD_API"

    def test_invalid_characters(self):
        """Dashes and dots should become underscores."""
        assert unit_key_prefix("my-api.v2") == "OKTETO_BUILD_MY_API_V2"

    def test_custom_prefix(self):
        """A custom prefix should be used."""
        assert unit_key_prefix("api", "BUILD") == "BUILD_API"


class TestEnvironmentExporter:
    """Tests for EnvironmentExporter."""

    def test_export_five_values(self):
        """Every built unit exports exactly five non-empty values."""
        exporter = EnvironmentExporter()
        reference = ImageReference(
            registry="okteto.dev", repository="test-a", tag="okteto", digest="sha256:1"
        )
        values = exporter.export("a", reference)

        assert values == {
            "OKTETO_BUILD_A_IMAGE": "okteto.dev/test-a:okteto@sha256:1",
            "OKTETO_BUILD_A_REGISTRY": "okteto.dev",
            "OKTETO_BUILD_A_REPOSITORY": "test-a",
            "OKTETO_BUILD_A_TAG": "okteto",
            "OKTETO_BUILD_A_SHA": "sha256:1",
        }
        assert exporter.unit_values("a") == values

    def test_export_without_digest(self):
        """A reference without digest exports its tag as SHA."""
        exporter = EnvironmentExporter()
        reference = ImageReference(registry="docker.io", repository="app", tag="1.0")
        values = exporter.export("a", reference)
        assert values["OKTETO_BUILD_A_SHA"] == "1.0"
        assert all(values.values())

    def test_snapshot_is_copy(self):
        """Mutating a snapshot should not affect the exporter."""
        exporter = EnvironmentExporter(initial={"X": "1"})
        snapshot = exporter.snapshot()
        snapshot["X"] = "2"
        assert exporter.get("X") == "1"
        assert exporter.get("missing") is None

    def test_concurrent_exports(self):
        """Concurrent exports should all be recorded."""
        exporter = EnvironmentExporter()
        reference = ImageReference(registry="r", repository="p", tag="t", digest="d")

        threads = [
            threading.Thread(target=exporter.export, args=(f"unit{i}", reference))
            for i in range(20)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(exporter.snapshot()) == 20 * 5

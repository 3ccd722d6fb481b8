"""Tests for builds/tagger.py module.

Tests image reference resolution and cache references for both tag
strategies.
"""

import pytest

from stackbuild.builds.plan import BuildUnit, VolumeMount
from stackbuild.builds.tagger import (
    ImageTagger,
    VolumeMountImageTagger,
    repository_name,
    sanitize_name,
    select_tagger,
)
from stackbuild.config import BuilderConfig


@pytest.fixture
def managed_config() -> BuilderConfig:
    """Managed context with global access on a clean project."""
    return BuilderConfig(
        smart_builds_enabled=True,
        has_global_access=True,
        is_clean_project=True,
        is_managed=True,
    )


class TestNames:
    """Tests for name sanitizing."""

    def test_sanitize(self):
        """Should lowercase and replace invalid characters."""
        assert sanitize_name("My_App.v2") == "my-app-v2"

    def test_repository_name(self):
        """Should join plan and unit names."""
        assert repository_name("test", "test") == "test-test"


class TestImageTagger:
    """Tests for ImageTagger."""

    def test_managed_without_image(self, managed_config):
        """A unit without image gets the dev registry reference."""
        tagger = ImageTagger(managed_config)
        ref = tagger.reference("test", "test", BuildUnit(), "hash")
        assert ref == "okteto.dev/test-test:okteto"

    def test_explicit_image_kept(self, managed_config):
        """An explicit image should be returned verbatim."""
        tagger = ImageTagger(managed_config)
        ref = tagger.reference("test", "test", BuildUnit(image="okteto/test"), "hash")
        assert ref == "okteto/test"

    def test_compose_ignores_image(self, managed_config):
        """Compose plans use the dev registry reference in a managed context."""
        tagger = ImageTagger(managed_config)
        unit = BuildUnit(image="okteto/test")
        ref = tagger.reference("test", "test", unit, "hash", compose=True)
        assert ref == "okteto.dev/test-test:okteto"

    def test_unmanaged_returns_image(self):
        """Outside a managed context the unit image is used as is."""
        tagger = ImageTagger(BuilderConfig(is_managed=False))
        assert tagger.reference("test", "test", BuildUnit(image="repo/app:1"), "h") == (
            "repo/app:1"
        )
        assert tagger.reference("test", "test", BuildUnit(), "h") == ""

    def test_cache_references_global_first(self, managed_config):
        """Global references come before dev ones."""
        tagger = ImageTagger(managed_config)
        assert tagger.cache_references("test", "test", "abc") == [
            "okteto.global/test-test:abc",
            "okteto.dev/test-test:abc",
        ]

    def test_cache_references_without_global_access(self):
        """Only the dev reference without global access."""
        config = BuilderConfig(is_managed=True, is_clean_project=True)
        tagger = ImageTagger(config)
        assert tagger.cache_references("test", "test", "abc") == [
            "okteto.dev/test-test:abc"
        ]

    def test_cache_references_dirty_project(self):
        """A dirty project never uses the global registry."""
        config = BuilderConfig(
            is_managed=True, has_global_access=True, is_clean_project=False
        )
        tagger = ImageTagger(config)
        assert tagger.cache_references("test", "test", "abc") == [
            "okteto.dev/test-test:abc"
        ]

    def test_cache_references_empty(self, managed_config):
        """No fingerprint or no managed context means no references."""
        assert ImageTagger(managed_config).cache_references("test", "test", "") == []
        assert ImageTagger(BuilderConfig()).cache_references("test", "test", "a") == []


class TestVolumeMountImageTagger:
    """Tests for VolumeMountImageTagger."""

    def test_reference(self, managed_config):
        """The volume variant has its own fixed tag."""
        tagger = VolumeMountImageTagger(managed_config)
        ref = tagger.reference("test", "test", BuildUnit(image="okteto/test"), "h")
        assert ref == "okteto.dev/test-test:okteto-with-volume-mounts"

    def test_cache_references_suffix(self, managed_config):
        """Fingerprint tags carry the volume suffix."""
        tagger = VolumeMountImageTagger(managed_config)
        assert tagger.cache_references("test", "test", "abc") == [
            "okteto.global/test-test:abc-with-volume-mounts",
            "okteto.dev/test-test:abc-with-volume-mounts",
        ]


class TestSelectTagger:
    """Tests for select_tagger function."""

    def test_standard(self, managed_config):
        """Units without volumes use the standard tagger."""
        tagger = select_tagger(BuildUnit(), managed_config)
        assert type(tagger) is ImageTagger

    def test_volumes(self, managed_config):
        """Units with volumes use the volume tagger."""
        unit = BuildUnit(volumes=(VolumeMount("a", "/a"),))
        assert isinstance(select_tagger(unit, managed_config), VolumeMountImageTagger)

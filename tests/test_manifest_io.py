"""Tests for manifest loading and schema validation.

These tests verify loading manifests from YAML and JSON files and the
conversion of their build section into a BuildPlan.
"""

import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from stackbuild.builds.plan import BuildArg, VolumeMount
from stackbuild.manifest import (
    BuildUnitSchema,
    ManifestError,
    ManifestSchema,
    load_manifest,
    parse_manifest_data,
)


@pytest.fixture
def manifest_data():
    """Return a manifest with two dependent units."""
    return {
        "name": "movies",
        "build": {
            "api": {
                "context": "api",
                "args": ["VERSION=1.0", "EMPTY="],
                "depends_on": "base",
                "volumes": ["data:/var/lib/data"],
            },
            "base": {
                "dockerfile": "Dockerfile.base",
                "image": "okteto/base",
                "args": {"FLAG": "on", "NUMBER": 3},
                "cache_from": "okteto/base:cache",
            },
        },
        "deploy": ["kubectl apply -f k8s.yml"],
    }


@pytest.fixture
def manifest_dir(tmp_path: Path) -> Path:
    """Create a named project directory for manifests."""
    project = tmp_path / "My Project"
    project.mkdir()
    return project


class TestParseManifestData:
    """Tests for parse_manifest_data."""

    def test_units_in_file_order(self, manifest_data):
        """Units should keep manifest order and ignore other sections."""
        plan = parse_manifest_data(manifest_data)
        assert plan.name == "movies"
        assert list(plan.units) == ["api", "base"]
        assert plan.compose is False

    def test_args_list(self, manifest_data):
        """'NAME=value' strings split on the first '='."""
        plan = parse_manifest_data(manifest_data)
        assert plan["api"].args == (BuildArg("VERSION", "1.0"), BuildArg("EMPTY", ""))

    def test_args_mapping(self, manifest_data):
        """Mapping args keep order and stringify values."""
        plan = parse_manifest_data(manifest_data)
        assert plan["base"].args == (BuildArg("FLAG", "on"), BuildArg("NUMBER", "3"))

    def test_single_strings(self, manifest_data):
        """Single strings are accepted for list fields."""
        plan = parse_manifest_data(manifest_data)
        assert plan["api"].depends_on == ("base",)
        assert plan["base"].cache_from == ("okteto/base:cache",)

    def test_volume_strings(self, manifest_data):
        """'local:remote' volume strings are parsed."""
        plan = parse_manifest_data(manifest_data)
        assert plan["api"].volumes == (VolumeMount("data", "/var/lib/data"),)

    def test_dockerfile_default(self, manifest_data):
        """An omitted dockerfile defaults to 'Dockerfile'."""
        plan = parse_manifest_data(manifest_data)
        assert plan["api"].dockerfile == "Dockerfile"
        assert plan["base"].dockerfile == "Dockerfile.base"

    def test_empty_dockerfile(self):
        """An empty dockerfile means the unit has none."""
        plan = parse_manifest_data(
            {"build": {"db": {"dockerfile": "", "image": "postgres", "volumes": ["./seed:/seed"]}}}
        )
        assert plan["db"].has_dockerfile() is False
        assert plan["db"].has_volume_mounts() is True

    def test_default_name(self):
        """Manifests without a name use the default name."""
        plan = parse_manifest_data({"build": {"api": {}}}, default_name="project")
        assert plan.name == "project"

    @pytest.mark.parametrize("manifest_type", ["compose", "stack"])
    def test_compose_types(self, manifest_type):
        """Compose and stack manifests produce compose plans."""
        plan = parse_manifest_data({"type": manifest_type, "build": {"api": {}}})
        assert plan.compose is True

    def test_empty_build(self):
        """A null build section has no units."""
        plan = parse_manifest_data({"name": "x", "build": None})
        assert dict(plan.units) == {}


class TestSchemaValidation:
    """Tests for schema validation failures."""

    def test_unknown_unit_field(self):
        """Unknown unit fields are rejected."""
        with pytest.raises(ValidationError):
            BuildUnitSchema.model_validate({"contxt": "."})

    def test_relative_remote_path(self):
        """Volume remote paths must be absolute."""
        with pytest.raises(ValidationError):
            BuildUnitSchema.model_validate({"volumes": ["data:relative"]})

    def test_volume_without_separator(self):
        """Volume strings need a 'local:remote' form."""
        with pytest.raises(ValidationError):
            BuildUnitSchema.model_validate({"volumes": ["data"]})

    def test_arg_without_name(self):
        """Args need a name."""
        with pytest.raises(ValidationError):
            BuildUnitSchema.model_validate({"args": ["=value"]})

    def test_invalid_unit_name(self):
        """Unit names must be safe identifiers."""
        with pytest.raises(ValidationError):
            ManifestSchema.model_validate({"build": {"my api": {}}})

    def test_invalid_type(self):
        """Unknown manifest types are rejected."""
        with pytest.raises(ValidationError):
            ManifestSchema.model_validate({"type": "helm"})


class TestLoadManifest:
    """Tests for load_manifest."""

    def test_load_yaml(self, manifest_dir, manifest_data):
        """Should load a YAML manifest."""
        path = manifest_dir / "stackbuild.yml"
        path.write_text(yaml.dump(manifest_data, sort_keys=False))

        plan = load_manifest(path)
        assert plan.name == "movies"
        assert list(plan.units) == ["api", "base"]

    def test_load_json(self, manifest_dir, manifest_data):
        """Files ending in .json are parsed as JSON."""
        path = manifest_dir / "stackbuild.json"
        path.write_text(json.dumps(manifest_data))

        plan = load_manifest(path)
        assert plan["api"].depends_on == ("base",)

    def test_name_from_directory(self, manifest_dir):
        """A manifest without a name is named after its directory."""
        path = manifest_dir / "stackbuild.yml"
        path.write_text("build:\n  api:\n    context: .\n")

        assert load_manifest(path).name == "my-project"

    def test_empty_file(self, manifest_dir):
        """An empty manifest has no units."""
        path = manifest_dir / "stackbuild.yml"
        path.write_text("")
        assert dict(load_manifest(path).units) == {}

    def test_not_found(self, tmp_path):
        """A missing file raises manifest_not_found."""
        with pytest.raises(ManifestError) as exc_info:
            load_manifest(tmp_path / "missing.yml")
        assert exc_info.value.code == "manifest_not_found"

    def test_invalid_yaml(self, tmp_path):
        """Malformed YAML raises manifest_parse_error."""
        path = tmp_path / "stackbuild.yml"
        path.write_text("build: [unclosed\n")
        with pytest.raises(ManifestError) as exc_info:
            load_manifest(path)
        assert exc_info.value.code == "manifest_parse_error"

    def test_not_a_mapping(self, tmp_path):
        """A top-level list raises manifest_parse_error."""
        path = tmp_path / "stackbuild.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ManifestError) as exc_info:
            load_manifest(path)
        assert exc_info.value.code == "manifest_parse_error"

    def test_invalid_schema(self, tmp_path):
        """Schema violations raise manifest_invalid."""
        path = tmp_path / "stackbuild.json"
        path.write_text(json.dumps({"build": {"api": {"volumes": ["a:b"]}}}))
        with pytest.raises(ManifestError) as exc_info:
            load_manifest(path)
        assert exc_info.value.code == "manifest_invalid"

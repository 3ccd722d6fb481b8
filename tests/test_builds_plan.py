"""Tests for builds/plan.py module.

Tests the plan model, unit selection and dependency ordering.
"""

import pytest

from stackbuild.builds.plan import (
    BuildArg,
    BuildPlan,
    BuildUnit,
    PlanValidationError,
    SchedulingError,
    VolumeMount,
    select_units,
    topological_order,
)


def make_plan(**depends: tuple[str, ...]) -> BuildPlan:
    """Create a plan whose units only declare dependencies."""
    return BuildPlan(
        name="test",
        units={name: BuildUnit(depends_on=deps) for name, deps in depends.items()},
    )


class TestBuildUnit:
    """Tests for BuildUnit."""

    def test_defaults(self):
        """A default unit has a Dockerfile and no volumes."""
        unit = BuildUnit()
        assert unit.has_dockerfile()
        assert not unit.has_volume_mounts()
        assert unit.context == "."

    def test_no_dockerfile(self):
        """An empty Dockerfile means the unit has none."""
        unit = BuildUnit(dockerfile="", volumes=(VolumeMount("a", "/a"),))
        assert not unit.has_dockerfile()
        assert unit.has_volume_mounts()

    def test_copy_is_independent(self):
        """copy() should leave the original unchanged."""
        unit = BuildUnit(image="a")
        copy = unit.copy(image="b")
        assert unit.image == "a"
        assert copy.image == "b"

    def test_expand_args(self):
        """expand_args() should expand values, not names."""
        unit = BuildUnit(args=(BuildArg("$NAME", "${VALUE}"),))
        expanded = unit.expand_args({"NAME": "n", "VALUE": "v"})
        assert expanded.args == (BuildArg("$NAME", "v"),)

    def test_with_extra_args_keeps_declared(self):
        """Declared args should not be overridden by extra args."""
        unit = BuildUnit(args=(BuildArg("A", "declared"),))
        result = unit.with_extra_args({"B": "2", "A": "extra", "C": "3"})
        assert result.args == (
            BuildArg("A", "declared"),
            BuildArg("B", "2"),
            BuildArg("C", "3"),
        )

    def test_build_arg_str(self):
        """BuildArg should render as NAME=value."""
        assert str(BuildArg("KEY", "value")) == "KEY=value"


class TestBuildPlan:
    """Tests for BuildPlan."""

    def test_units_read_only(self):
        """Plan units should not be mutable."""
        plan = make_plan(a=())
        with pytest.raises(TypeError):
            plan.units["b"] = BuildUnit()  # type: ignore[index]

    def test_lookup(self):
        """Plans should support item lookup and membership."""
        plan = make_plan(a=())
        assert "a" in plan
        assert "b" not in plan
        assert plan["a"] == BuildUnit()

    def test_expand(self):
        """expand() should expand every unit's args."""
        plan = BuildPlan(
            name="test",
            units={"a": BuildUnit(args=(BuildArg("IMAGE", "$OKTETO_BUILD_B_IMAGE"),))},
        )
        expanded = plan.expand({"OKTETO_BUILD_B_IMAGE": "registry/b:1"})
        assert expanded["a"].args == (BuildArg("IMAGE", "registry/b:1"),)
        assert plan["a"].args[0].value == "$OKTETO_BUILD_B_IMAGE"


class TestSelectUnits:
    """Tests for select_units function."""

    def test_all_units_by_default(self):
        """No request should select every unit in plan order."""
        plan = make_plan(a=(), b=("a",), c=())
        assert select_units(plan) == ["a", "b", "c"]

    def test_unknown_units(self):
        """Unknown names should be rejected."""
        plan = make_plan(a=())
        with pytest.raises(PlanValidationError) as exc_info:
            select_units(plan, ["a", "nope"])
        assert exc_info.value.code == "unknown_units"
        assert "nope" in str(exc_info.value)

    def test_includes_transitive_dependencies(self):
        """Requested units should pull in their dependencies."""
        plan = make_plan(a=(), b=("a",), c=("b",), d=())
        assert select_units(plan, ["c"]) == ["a", "b", "c"]

    def test_missing_dependency_kept(self):
        """Undefined dependencies should stay selected for scheduling."""
        plan = make_plan(a=("ghost",))
        assert select_units(plan, ["a"]) == ["a", "ghost"]


class TestTopologicalOrder:
    """Tests for topological_order function."""

    def test_dependencies_first(self):
        """Every unit should follow its dependencies."""
        plan = make_plan(api=("db", "cache"), db=(), cache=("db",))
        order = topological_order(plan.units, ["api", "db", "cache"])
        assert order.index("db") < order.index("cache") < order.index("api")

    def test_independent_units_keep_order(self):
        """Independent units should keep the given order."""
        plan = make_plan(a=(), b=(), c=())
        assert topological_order(plan.units, ["c", "a", "b"]) == ["c", "a", "b"]

    def test_cycle(self):
        """A cycle should raise instead of looping."""
        plan = make_plan(a=("b",), b=("a",), c=())
        with pytest.raises(SchedulingError) as exc_info:
            topological_order(plan.units, ["a", "b", "c"])
        assert exc_info.value.code == "dependency_cycle"
        assert exc_info.value.units == ["a", "b"]

    def test_self_dependency(self):
        """A unit depending on itself is a cycle."""
        plan = make_plan(a=("a",))
        with pytest.raises(SchedulingError):
            topological_order(plan.units, ["a"])

    def test_missing_dependency(self):
        """A dependency outside the plan should be reported."""
        plan = make_plan(a=("ghost",))
        with pytest.raises(SchedulingError) as exc_info:
            topological_order(plan.units, ["a"])
        assert exc_info.value.code == "missing_dependency"
        assert exc_info.value.units == ["a"]

    def test_missing_dependency_after_selection(self):
        """Selection of a unit with an undefined dependency should not schedule."""
        plan = make_plan(a=("ghost",))
        with pytest.raises(SchedulingError) as exc_info:
            topological_order(plan.units, select_units(plan, ["a"]))
        assert "ghost" in exc_info.value.units

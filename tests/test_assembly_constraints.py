"""Tests for assembly_constraints module: kinds, registry and evaluation."""
import asyncio

import numpy as np
import pytest

from assembly_constraints import (
    Constraint,
    ConstraintHandler,
    ConstraintKind,
    ConstraintRegistry,
    evaluate_constraint,
    normalize_kind,
)
from assembly_scene import Selection, SelectionKind, vertex_element
from constraint_status import ConstraintRunResult, ConstraintStatus


def face(name):
    return Selection(name, SelectionKind.FACE)


def point(name):
    return Selection(name, SelectionKind.POINT)


def evaluate(constraint, ctx, registry=None):
    return asyncio.run(evaluate_constraint(constraint, ctx, registry))


class TestRegistry:

    def test_builtin_kinds(self):
        registry = ConstraintRegistry()
        kinds = {h.kind for h in registry.list()}
        assert kinds == {k.value for k in ConstraintKind}

    @pytest.mark.parametrize("name", ["parallel", "PARA", "Parallel Constraint", "align", ConstraintKind.PARALLEL])
    def test_lookup_by_alias(self, name):
        assert ConstraintRegistry().get(name).kind == "parallel"

    def test_unknown_kind(self):
        registry = ConstraintRegistry()
        with pytest.raises(KeyError):
            registry.get("distance")
        with pytest.raises(KeyError):
            registry.get("")
        assert registry.get_safe("distance") is None
        assert not registry.has("distance")

    def test_generated_ids(self):
        registry = ConstraintRegistry()
        first = registry.create("parallel")
        second = registry.create(ConstraintKind.FIXED)
        third = registry.create("anti-parallel", tolerance=0.01, oppose_normals=True)
        assert first.id == "PARA1"
        assert second.id == "FIXD2"
        assert third.id == "ANTI3"
        assert third.kind is ConstraintKind.ANTI_PARALLEL
        assert third.tolerance == 0.01
        assert third.options == {"oppose_normals": True}
        assert first.selections == [None, None]

    def test_custom_handler(self):
        def evaluate_noop(constraint, context):
            return ConstraintRunResult(ok=True, status=ConstraintStatus.NOOP.value)

        registry = ConstraintRegistry(include_builtins=False)
        registry.register(ConstraintHandler(
            kind="distance",
            short_name="dist",
            evaluate=evaluate_noop,
            statuses=frozenset({ConstraintStatus.NOOP}),
            aliases=["offset"],
        ))
        constraint = registry.create("offset")
        assert constraint.id == "DIST1"
        assert constraint.kind == "distance"
        assert not registry.has("parallel")
        assert evaluate(constraint, None, registry).status == "noop"

    def test_register_requires_kind(self):
        with pytest.raises(ValueError):
            ConstraintRegistry().register(ConstraintHandler(kind="", short_name="X", evaluate=None))

    def test_normalize_kind(self):
        assert normalize_kind(ConstraintKind.TOUCH_ALIGN) == "touch_align"
        assert normalize_kind("  Fixed ") == "fixed"
        assert normalize_kind(None) == ""


class TestConstraintRecord:

    def test_oppose_normals(self):
        assert Constraint("A1", ConstraintKind.ANTI_PARALLEL).oppose_normals
        assert not Constraint("P1", ConstraintKind.PARALLEL).oppose_normals
        assert Constraint("P2", "parallel", options={"oppose_normals": True}).oppose_normals


class TestAlignmentKinds:

    def test_incomplete_selection(self, aligned_scene):
        constraint = Constraint("PARA1", ConstraintKind.PARALLEL, [face("base:+z"), None])
        result = evaluate(constraint, aligned_scene.make_context())
        assert result.status == "incomplete"
        assert not result.ok

    def test_parallel_adjusts(self, tilted_scene):
        constraint = Constraint("PARA1", ConstraintKind.PARALLEL, [face("base:+z"), face("top:+z")])
        result = evaluate(constraint, tilted_scene.make_context())
        assert result.status == "adjusted"
        assert result.angle_error_deg == pytest.approx(30.0)

    def test_per_constraint_tolerance(self, make_scene):
        scene = make_scene(tilt_deg=2.0)
        loose = Constraint("PARA1", ConstraintKind.PARALLEL, [face("base:+z"), face("top:+z")], tolerance=0.01)
        strict = Constraint("PARA2", ConstraintKind.PARALLEL, [face("base:+z"), face("top:+z")])
        assert evaluate(loose, scene.make_context()).status == "satisfied"
        assert evaluate(strict, scene.make_context()).status == "adjusted"

    def test_anti_parallel(self, aligned_scene):
        constraint = Constraint("ANTI1", ConstraintKind.ANTI_PARALLEL, [face("base:+z"), face("top:-z")])
        assert evaluate(constraint, aligned_scene.make_context()).status == "satisfied"


class TestTouchAlign:

    def _constraint(self):
        return Constraint(
            "TALN1",
            ConstraintKind.TOUCH_ALIGN,
            [face("base:+z"), face("top:-z")],
            options={"oppose_normals": True},
        )

    def test_translates_into_contact(self, aligned_scene):
        ctx = aligned_scene.make_context(translation_gain=1.0)
        first = evaluate(self._constraint(), ctx)
        assert first.status == "adjusted"
        assert first.error == pytest.approx(70.0)
        assert [m["component"] for m in first.moves] == ["top"]

        second = evaluate(self._constraint(), ctx)
        assert second.status == "satisfied"
        np.testing.assert_allclose(aligned_scene.get_component("top").position, [0, 0, 30], atol=1e-9)

    def test_orients_before_translating(self, tilted_scene):
        result = evaluate(self._constraint(), tilted_scene.make_context())
        assert result.status == "adjusted"
        assert result.rotations
        assert result.moves == []
        assert result.diagnostics["stage"] == "orientation"

    def test_both_fixed_blocks(self, make_scene):
        scene = make_scene(top_fixed=True)
        result = evaluate(self._constraint(), scene.make_context())
        assert result.status == "blocked"


class TestCoincident:

    @pytest.fixture
    def pinned_scene(self, make_scene):
        def _make(base_fixed=True, top_fixed=False):
            scene = make_scene(base_fixed=base_fixed, top_fixed=top_fixed)
            scene.get_component("base").add_element(vertex_element("base:pin", [0, 0, 10]))
            scene.get_component("top").add_element(vertex_element("top:hole", [0, 0, -20]))
            return scene
        return _make

    def _constraint(self):
        return Constraint("COIN1", ConstraintKind.COINCIDENT, [point("base:pin"), point("top:hole")])

    def test_converges_onto_fixed_point(self, pinned_scene):
        scene = pinned_scene()
        ctx = scene.make_context()
        errors = []
        for _ in range(60):
            result = evaluate(self._constraint(), ctx)
            errors.append(result.error)
            if result.status == "satisfied":
                break
            assert result.status == "adjusted"
        assert result.status == "satisfied"
        assert errors[0] == pytest.approx(70.0)
        assert all(later < earlier for earlier, later in zip(errors, errors[1:]))
        np.testing.assert_allclose(scene.get_component("base").position, [0, 0, 0])

    def test_splits_move_when_both_movable(self, pinned_scene):
        scene = pinned_scene(base_fixed=False)
        ctx = scene.make_context(translation_gain=1.0)
        result = evaluate(self._constraint(), ctx)
        assert result.status == "adjusted"
        np.testing.assert_allclose(scene.get_component("base").position, [0, 0, 35])
        np.testing.assert_allclose(scene.get_component("top").position, [0, 0, 65])
        assert evaluate(self._constraint(), ctx).status == "satisfied"

    def test_both_fixed_blocks(self, pinned_scene):
        scene = pinned_scene(top_fixed=True)
        assert evaluate(self._constraint(), scene.make_context()).status == "blocked"

    def test_same_component_invalid(self, pinned_scene):
        scene = pinned_scene()
        constraint = Constraint("COIN2", ConstraintKind.COINCIDENT, [point("top:hole"), face("top:+z")])
        assert evaluate(constraint, scene.make_context()).status == "invalid-selection"


class TestFixed:

    def test_locks_component_once(self, aligned_scene):
        ctx = aligned_scene.make_context()
        top = aligned_scene.get_component("top")
        constraint = Constraint("FIXD1", ConstraintKind.FIXED, [Selection("top", SelectionKind.COMPONENT)])

        first = evaluate(constraint, ctx)
        assert first.status == "satisfied"
        assert first.applied
        assert top.fixed_by_constraint
        assert aligned_scene.is_component_fixed(top)

        second = evaluate(constraint, ctx)
        assert second.status == "satisfied"
        assert not second.applied

    def test_missing_selection(self, aligned_scene):
        constraint = Constraint("FIXD1", ConstraintKind.FIXED, [None])
        assert evaluate(constraint, aligned_scene.make_context()).status == "incomplete"

"""
Parallel / anti-parallel alignment between two selections.

Each call measures the angle between the two resolved directions and, when
it is outside tolerance, nudges the movable component(s) by a gain-scaled,
step-bounded rotation. Repeated calls converge; a single call never solves
the whole problem. All mutation goes through ``context.apply_rotation``.
"""
import inspect
import logging
import math
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import numpy as np
import trimesh

from constraint_status import (
    ConstraintRunResult,
    ConstraintStatus,
    InvalidSelectionError,
)
from direction_resolver import DirectionInfo, DirectionResolver, describe_selection_label
from solver_context import SolverContext, clamp_gain

logger = logging.getLogger(__name__)

ANGLE_TOLERANCE = math.radians(0.5)
MAX_ROTATION_PER_ITERATION = math.radians(20.0)
MIN_APPLIED_ANGLE = 1e-6
_NEAR_ZERO_AXIS_SQ = 1e-12


def convergence_tolerance(context_tolerance: float) -> float:
    """Angular band treated as aligned."""
    return max(ANGLE_TOLERANCE, abs(context_tolerance) * 10.0)


def angle_between(a: np.ndarray, b: np.ndarray) -> float:
    """Angle in [0, pi] between two unit vectors."""
    return float(math.acos(float(np.clip(np.dot(a, b), -1.0, 1.0))))


def rotation_axis(current: np.ndarray, target: np.ndarray) -> Optional[np.ndarray]:
    """Unit axis turning ``current`` toward ``target``.

    For (anti)parallel inputs the cross product vanishes, so any axis
    perpendicular to ``current`` is used instead.
    """
    axis = np.cross(current, target)
    if float(axis @ axis) <= _NEAR_ZERO_AXIS_SQ:
        axis = np.cross(np.array([1.0, 0.0, 0.0]), current)
        if float(axis @ axis) <= _NEAR_ZERO_AXIS_SQ:
            axis = np.cross(np.array([0.0, 1.0, 0.0]), current)
    length = float(np.linalg.norm(axis))
    if not math.isfinite(length) or length <= 0.0:
        return None
    return axis / length


def corrective_rotation(current: np.ndarray, target: np.ndarray, gain: float = 1.0) -> Optional[np.ndarray]:
    """Unit quaternion [w, x, y, z] moving ``current`` toward ``target``.

    The applied angle is ``min(angle * gain, MAX_ROTATION_PER_ITERATION, angle)``.
    Returns None when that rounds to nothing or no axis can be built.
    """
    angle = angle_between(current, target)
    if not math.isfinite(angle) or angle <= MIN_APPLIED_ANGLE:
        return None
    axis = rotation_axis(current, target)
    if axis is None:
        return None
    applied = min(angle * clamp_gain(gain, 1.0), MAX_ROTATION_PER_ITERATION, angle)
    if applied <= MIN_APPLIED_ANGLE:
        return None
    quaternion = trimesh.transformations.quaternion_about_axis(applied, axis)
    if not np.all(np.isfinite(quaternion)):
        return None
    return quaternion / np.linalg.norm(quaternion)


@dataclass
class _RotationStep:
    component: Any
    current: np.ndarray
    target: np.ndarray
    gain: float


@dataclass
class _AlignmentPlan:
    angle: float
    info_a: DirectionInfo
    info_b: DirectionInfo
    steps: List[_RotationStep] = field(default_factory=list)


def _component_key(component) -> str:
    return getattr(component, "name", None) or str(id(component))


class AlignmentEvaluator:
    """Evaluates one alignment constraint against a host context.

    ``solve`` never raises: resolution and validation failures come back
    as results with a descriptive status.
    """

    def __init__(self, labels: Sequence[str] = ("element_A", "element_B")):
        self.labels = tuple(labels)

    def solve(self, constraint, context: SolverContext) -> ConstraintRunResult:
        plan = self._plan(constraint, context)
        if isinstance(plan, ConstraintRunResult):
            return plan
        rotations = []
        try:
            for step in plan.steps:
                quaternion = corrective_rotation(step.current, step.target, step.gain)
                if quaternion is None:
                    continue
                outcome = context.apply_rotation(step.component, quaternion)
                if inspect.isawaitable(outcome):
                    # A coroutine can't be awaited here; discard it.
                    if inspect.iscoroutine(outcome):
                        outcome.close()
                    logger.warning("apply_rotation returned an awaitable; use solve_async")
                    continue
                if outcome:
                    rotations.append(self._record(step.component, quaternion))
        except Exception as exc:
            return self._apply_failed(plan, rotations, exc)
        return self._finish(plan, rotations)

    async def solve_async(self, constraint, context: SolverContext) -> ConstraintRunResult:
        """Same as ``solve`` but awaits an asynchronous ``apply_rotation``."""
        plan = self._plan(constraint, context)
        if isinstance(plan, ConstraintRunResult):
            return plan
        rotations = []
        try:
            for step in plan.steps:
                quaternion = corrective_rotation(step.current, step.target, step.gain)
                if quaternion is None:
                    continue
                outcome = context.apply_rotation(step.component, quaternion)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                if outcome:
                    rotations.append(self._record(step.component, quaternion))
        except Exception as exc:
            return self._apply_failed(plan, rotations, exc)
        return self._finish(plan, rotations)

    # ─── Planning ────────────────────────────────────────────────────────────

    def _plan(self, constraint, context: SolverContext):
        selections = list(getattr(constraint, "selections", None) or [])
        selections += [None] * (2 - len(selections))
        sel_a, sel_b = selections[0], selections[1]
        label_a, label_b = self.labels
        resolver = DirectionResolver(context)

        infos = []
        for selection, label in ((sel_a, label_a), (sel_b, label_b)):
            try:
                infos.append(resolver.resolve_direction(selection, label=label))
            except Exception as exc:
                return ConstraintRunResult(
                    ok=False,
                    status=ConstraintStatus.NORMAL_RESOLUTION_FAILED.value,
                    message=f"Failed to resolve a normal for {describe_selection_label(label)}.",
                    exception=exc,
                    info_a=infos[0] if infos else None,
                    diagnostics={"details": getattr(exc, "details", {})},
                )
        info_a, info_b = infos

        try:
            self._validate(info_a, info_b)
        except InvalidSelectionError as exc:
            return ConstraintRunResult(
                ok=False,
                status=ConstraintStatus.INVALID_SELECTION.value,
                message=str(exc),
                exception=exc,
                info_a=info_a,
                info_b=info_b,
            )

        oppose = bool(getattr(constraint, "oppose_normals", False))
        dir_a, dir_b = info_a.direction, info_b.direction
        target_for_b = -dir_a if oppose else dir_a
        target_for_a = -dir_b if oppose else dir_b
        angle = angle_between(dir_b, target_for_b)
        angle_deg = math.degrees(angle)
        tolerance = convergence_tolerance(context.tolerance)

        if angle <= tolerance:
            return ConstraintRunResult(
                ok=True,
                status=ConstraintStatus.SATISFIED.value,
                satisfied=True,
                applied=False,
                angle_error=angle,
                angle_error_deg=angle_deg,
                error=angle,
                message="Reference directions are parallel within tolerance.",
                diagnostics={"angle": angle, "angle_deg": angle_deg, "tolerance": tolerance},
                info_a=info_a,
                info_b=info_b,
            )

        try:
            fixed_a = bool(context.is_component_fixed(info_a.component))
            fixed_b = bool(context.is_component_fixed(info_b.component))
        except Exception as exc:
            return ConstraintRunResult(
                ok=False,
                status=ConstraintStatus.ERROR.value,
                angle_error=angle,
                angle_error_deg=angle_deg,
                error=angle,
                message=f"Unable to query fixed state: {exc}",
                exception=exc,
                info_a=info_a,
                info_b=info_b,
            )

        if fixed_a and fixed_b:
            return ConstraintRunResult(
                ok=False,
                status=ConstraintStatus.BLOCKED.value,
                angle_error=angle,
                angle_error_deg=angle_deg,
                error=angle,
                message="Both components are fixed; unable to rotate to satisfy constraint.",
                diagnostics={"angle": angle, "angle_deg": angle_deg, "tolerance": tolerance},
                info_a=info_a,
                info_b=info_b,
            )

        gain = clamp_gain(context.rotation_gain, 1.0)
        plan = _AlignmentPlan(angle=angle, info_a=info_a, info_b=info_b)
        if not fixed_a and not fixed_b:
            plan.steps.append(_RotationStep(info_a.component, dir_a, target_for_a, gain * 0.5))
            plan.steps.append(_RotationStep(info_b.component, dir_b, target_for_b, gain * 0.5))
        elif fixed_a:
            plan.steps.append(_RotationStep(info_b.component, dir_b, target_for_b, gain))
        else:
            plan.steps.append(_RotationStep(info_a.component, dir_a, target_for_a, gain))
        return plan

    @staticmethod
    def _validate(info_a: DirectionInfo, info_b: DirectionInfo):
        if info_a.component is None or info_b.component is None:
            raise InvalidSelectionError(
                "Both selections must belong to assembly components.",
                details={"component_a": info_a.component is not None,
                         "component_b": info_b.component is not None},
            )
        if info_a.component is info_b.component:
            raise InvalidSelectionError(
                "Select references from two different components.",
                details={"component": _component_key(info_a.component)},
            )

    # ─── Results ─────────────────────────────────────────────────────────────

    @staticmethod
    def _record(component, quaternion: np.ndarray) -> dict:
        return {"component": _component_key(component), "quaternion": [float(v) for v in quaternion]}

    def _finish(self, plan: _AlignmentPlan, rotations: List[dict]) -> ConstraintRunResult:
        applied = bool(rotations)
        angle_deg = math.degrees(plan.angle)
        return ConstraintRunResult(
            ok=True,
            status=(ConstraintStatus.ADJUSTED if applied else ConstraintStatus.PENDING).value,
            satisfied=False,
            applied=applied,
            angle_error=plan.angle,
            angle_error_deg=angle_deg,
            error=plan.angle,
            message=(
                "Applied rotation to improve parallelism."
                if applied else "Waiting for a movable component to rotate."
            ),
            diagnostics={"angle": plan.angle, "angle_deg": angle_deg, "rotations": rotations},
            rotations=rotations,
            info_a=plan.info_a,
            info_b=plan.info_b,
        )

    def _apply_failed(self, plan: _AlignmentPlan, rotations: List[dict], exc: Exception) -> ConstraintRunResult:
        logger.warning("apply_rotation failed: %s", exc)
        return ConstraintRunResult(
            ok=False,
            status=ConstraintStatus.ERROR.value,
            applied=bool(rotations),
            angle_error=plan.angle,
            angle_error_deg=math.degrees(plan.angle),
            error=plan.angle,
            message=f"Rotation could not be applied: {exc}",
            exception=exc,
            diagnostics={"angle": plan.angle, "rotations": rotations},
            rotations=rotations,
            info_a=plan.info_a,
            info_b=plan.info_b,
        )


def solve_alignment(constraint, context: SolverContext) -> ConstraintRunResult:
    return AlignmentEvaluator().solve(constraint, context)

"""
Assembly constraint definitions and the registry of constraint kinds.

A constraint is a plain record (id, kind, two selections, options). Its
behaviour lives in a ConstraintHandler looked up by kind, so new kinds are
added by registering a handler, not by subclassing.
"""
import inspect
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Union

import numpy as np

from alignment_evaluator import AlignmentEvaluator
from constraint_status import ConstraintRunResult, ConstraintStatus, CORE_STATUSES
from direction_resolver import resolve_origin
from solver_context import SolverContext, clamp_gain

logger = logging.getLogger(__name__)


class ConstraintKind(Enum):
    """Built-in constraint kinds."""
    PARALLEL = "parallel"
    ANTI_PARALLEL = "anti_parallel"
    TOUCH_ALIGN = "touch_align"
    COINCIDENT = "coincident"
    FIXED = "fixed"


@dataclass(eq=False)
class Constraint:
    """
    A user-defined relationship between two selections.

    Attributes:
        id: Unique identifier (e.g. "PARA1")
        kind: Constraint kind (enum member or registered name)
        selections: [element A, element B]; FIXED uses only the first
        tolerance: Per-constraint override of the solver tolerance
        options: Kind-specific flags (e.g. oppose_normals)
        last_result: Outcome of the most recent evaluation
    """
    id: str
    kind: Union[ConstraintKind, str]
    selections: List[Any] = field(default_factory=lambda: [None, None])
    tolerance: Optional[float] = None
    options: Dict[str, Any] = field(default_factory=dict)
    last_result: Optional[ConstraintRunResult] = None

    @property
    def kind_name(self) -> str:
        return normalize_kind(self.kind)

    @property
    def oppose_normals(self) -> bool:
        if self.kind_name == ConstraintKind.ANTI_PARALLEL.value:
            return True
        return bool(self.options.get("oppose_normals", False))


def normalize_kind(kind) -> str:
    if isinstance(kind, Enum):
        kind = kind.value
    if kind is None:
        return ""
    return str(kind).strip().lower()


EvaluateFn = Callable[[Constraint, SolverContext], Union[ConstraintRunResult, Awaitable[ConstraintRunResult]]]


@dataclass
class ConstraintHandler:
    """How one constraint kind evaluates, plus the statuses it may report."""
    kind: str
    short_name: str
    evaluate: EvaluateFn
    statuses: FrozenSet[ConstraintStatus] = CORE_STATUSES
    aliases: List[str] = field(default_factory=list)
    label: str = ""


def _incomplete(message: str) -> ConstraintRunResult:
    return ConstraintRunResult(ok=False, status=ConstraintStatus.INCOMPLETE.value, message=message)


def _present(selections: List[Any], count: int) -> bool:
    return len(selections) >= count and all(s is not None for s in selections[:count])


def _effective_context(constraint: Constraint, context: SolverContext) -> SolverContext:
    if constraint.tolerance is None:
        return context
    return replace(context, tolerance=constraint.tolerance)


# ─── Alignment kinds ─────────────────────────────────────────────────────────

async def evaluate_parallel(constraint: Constraint, context: SolverContext) -> ConstraintRunResult:
    if not _present(constraint.selections, 2):
        return _incomplete("Select two references to define the constraint.")
    result = await AlignmentEvaluator().solve_async(constraint, _effective_context(constraint, context))
    if result.info_a is not None and result.info_b is not None:
        logger.debug(
            "%s normals A=%s (%s) B=%s (%s) angle=%.4f deg",
            constraint.id,
            result.info_a.direction, result.info_a.source.value,
            result.info_b.direction, result.info_b.source.value,
            result.angle_error_deg or 0.0,
        )
    return result


async def evaluate_anti_parallel(constraint: Constraint, context: SolverContext) -> ConstraintRunResult:
    """Parallel alignment with opposed normals, whatever alias the kind was given as."""
    return await evaluate_parallel(replace(constraint, kind=ConstraintKind.ANTI_PARALLEL), context)


async def evaluate_touch_align(constraint: Constraint, context: SolverContext) -> ConstraintRunResult:
    """Align orientation first, then translate B onto A's plane."""
    if not _present(constraint.selections, 2):
        return _incomplete("Select two references to define the constraint.")
    ctx = _effective_context(constraint, context)
    aligned = await AlignmentEvaluator().solve_async(constraint, ctx)
    if not aligned.ok or not aligned.satisfied:
        aligned.diagnostics["stage"] = "orientation"
        return aligned

    info_a, info_b = aligned.info_a, aligned.info_b
    if info_a.origin is None or info_b.origin is None:
        return ConstraintRunResult(
            ok=False,
            status=ConstraintStatus.INVALID_SELECTION.value,
            message="Unable to resolve contact data after alignment.",
        )

    dir_a = info_a.direction
    separation = float((info_b.origin - info_a.origin) @ dir_a)
    distance = abs(separation)
    tolerance = max(abs(ctx.tolerance), 1e-8)

    if distance <= tolerance:
        return ConstraintRunResult(
            ok=True,
            status=ConstraintStatus.SATISFIED.value,
            satisfied=True,
            error=distance,
            angle_error=aligned.angle_error,
            message="Faces are touching within tolerance.",
            diagnostics={"separation": separation, "moves": []},
            info_a=info_a,
            info_b=info_b,
        )

    return _translate_apart(
        ctx, info_a.component, info_b.component,
        delta=dir_a * -separation,
        distance=distance,
        diagnostics={"separation": separation, "stage": "contact"},
        messages=("Applied translation to bring faces into contact.",
                  "Waiting for a movable component to translate.",
                  "Both components are fixed; unable to translate to touch."),
        infos=(info_a, info_b),
    )


# ─── Positional kinds ────────────────────────────────────────────────────────

def _translate_apart(ctx, comp_a, comp_b, delta, distance, diagnostics, messages, infos=(None, None)):
    """Move B by ``delta`` (and A by its negative), split when both are movable."""
    applied_msg, pending_msg, blocked_msg = messages
    fixed_a = bool(ctx.is_component_fixed(comp_a))
    fixed_b = bool(ctx.is_component_fixed(comp_b))
    if fixed_a and fixed_b:
        return ConstraintRunResult(
            ok=False,
            status=ConstraintStatus.BLOCKED.value,
            error=distance,
            message=blocked_msg,
            diagnostics=dict(diagnostics, moves=[]),
            info_a=infos[0],
            info_b=infos[1],
        )

    step = delta * clamp_gain(ctx.translation_gain, 1.0)
    plan = []
    if not fixed_a and not fixed_b:
        plan = [(comp_a, -0.5 * step), (comp_b, 0.5 * step)]
    elif fixed_a:
        plan = [(comp_b, step)]
    else:
        plan = [(comp_a, -step)]

    moves = []
    for component, move in plan:
        if float(move @ move) == 0.0:
            continue
        if ctx.apply_translation(component, move):
            moves.append({"component": getattr(component, "name", None), "move": [float(v) for v in move]})

    applied = bool(moves)
    return ConstraintRunResult(
        ok=True,
        status=(ConstraintStatus.ADJUSTED if applied else ConstraintStatus.PENDING).value,
        applied=applied,
        error=distance,
        message=applied_msg if applied else pending_msg,
        diagnostics=dict(diagnostics, moves=moves),
        moves=moves,
        info_a=infos[0],
        info_b=infos[1],
    )


def evaluate_coincident(constraint: Constraint, context: SolverContext) -> ConstraintRunResult:
    """Bring the two anchor points together."""
    if not _present(constraint.selections, 2):
        return _incomplete("Select two references to define the constraint.")
    ctx = _effective_context(constraint, context)
    ctx.refresh_world()

    points, components = [], []
    for selection in constraint.selections[:2]:
        component = ctx.resolve_component(selection)
        points.append(resolve_origin(ctx.resolve_object(selection), component))
        components.append(component)
    comp_a, comp_b = components

    if comp_a is None or comp_b is None:
        return ConstraintRunResult(
            ok=False, status=ConstraintStatus.INVALID_SELECTION.value,
            message="Both selections must belong to assembly components.",
        )
    if comp_a is comp_b:
        return ConstraintRunResult(
            ok=False, status=ConstraintStatus.INVALID_SELECTION.value,
            message="Select references from two different components.",
        )
    if points[0] is None or points[1] is None:
        return ConstraintRunResult(
            ok=False, status=ConstraintStatus.INVALID_SELECTION.value,
            message="Unable to resolve world-space positions for one or both selections.",
        )

    delta = points[0] - points[1]
    distance = float(np.linalg.norm(delta))
    if distance <= abs(ctx.tolerance):
        return ConstraintRunResult(
            ok=True,
            status=ConstraintStatus.SATISFIED.value,
            satisfied=True,
            error=distance,
            message="Selections are coincident within tolerance.",
            diagnostics={"distance": distance, "moves": []},
        )

    return _translate_apart(
        ctx, comp_a, comp_b,
        delta=delta,
        distance=distance,
        diagnostics={"distance": distance},
        messages=("Applied translation to reduce separation.",
                  "Waiting for a movable component to adjust.",
                  "Both components are fixed; unable to adjust positions."),
    )


def evaluate_fixed(constraint: Constraint, context: SolverContext) -> ConstraintRunResult:
    """Lock the selected component in place."""
    selection = next((s for s in constraint.selections if s is not None), None)
    component = context.resolve_component(selection) if selection is not None else None
    if component is None:
        return _incomplete("Select an assembly component to fix in place.")

    was_fixed = bool(context.is_component_fixed(component))
    component.fixed_by_constraint = True
    message = "Component already marked as fixed." if was_fixed else "Component locked in place by constraint."
    return ConstraintRunResult(
        ok=True,
        status=ConstraintStatus.SATISFIED.value,
        satisfied=True,
        applied=not was_fixed,
        error=0.0,
        message=message,
        diagnostics={"component": getattr(component, "name", None)},
    )


# ─── Registry ────────────────────────────────────────────────────────────────

BUILTIN_HANDLERS = [
    ConstraintHandler(
        kind=ConstraintKind.PARALLEL.value,
        short_name="PARA",
        evaluate=evaluate_parallel,
        statuses=CORE_STATUSES | {ConstraintStatus.INCOMPLETE},
        aliases=["parallel constraint", "align"],
        label="Parallel Constraint",
    ),
    ConstraintHandler(
        kind=ConstraintKind.ANTI_PARALLEL.value,
        short_name="ANTI",
        evaluate=evaluate_anti_parallel,
        statuses=CORE_STATUSES | {ConstraintStatus.INCOMPLETE},
        aliases=["anti-parallel", "antiparallel", "oppose"],
        label="Anti-Parallel Constraint",
    ),
    ConstraintHandler(
        kind=ConstraintKind.TOUCH_ALIGN.value,
        short_name="TALN",
        evaluate=evaluate_touch_align,
        statuses=CORE_STATUSES | {ConstraintStatus.INCOMPLETE},
        aliases=["touch", "touch-align"],
        label="Touch Align Constraint",
    ),
    ConstraintHandler(
        kind=ConstraintKind.COINCIDENT.value,
        short_name="COIN",
        evaluate=evaluate_coincident,
        statuses=CORE_STATUSES | {ConstraintStatus.INCOMPLETE},
        aliases=["mate", "coincident constraint"],
        label="Coincident Constraint",
    ),
    ConstraintHandler(
        kind=ConstraintKind.FIXED.value,
        short_name="FIXD",
        evaluate=evaluate_fixed,
        statuses=frozenset({ConstraintStatus.SATISFIED, ConstraintStatus.INCOMPLETE}),
        aliases=["fix", "fixed constraint"],
        label="Fixed Constraint",
    ),
]


class ConstraintRegistry:
    """Maps kind names, short names and aliases to handlers."""

    def __init__(self, include_builtins: bool = True):
        self._handlers: Dict[str, ConstraintHandler] = {}
        self._aliases: Dict[str, ConstraintHandler] = {}
        self._id_counter = 0
        if include_builtins:
            for handler in BUILTIN_HANDLERS:
                self.register(handler)

    def register(self, handler: ConstraintHandler):
        key = normalize_kind(handler.kind)
        if not key:
            raise ValueError("Constraint handler needs a non-empty kind")
        self._handlers[key] = handler
        for alias in [handler.short_name, handler.label, *handler.aliases]:
            alias_key = normalize_kind(alias)
            if alias_key and alias_key != key:
                self._aliases[alias_key] = handler

    def get(self, kind) -> ConstraintHandler:
        key = normalize_kind(kind)
        if not key:
            raise KeyError("Constraint kind must be a non-empty string")
        handler = self._handlers.get(key) or self._aliases.get(key)
        if handler is None:
            raise KeyError(f'Constraint kind "{kind}" is not registered.')
        return handler

    def get_safe(self, kind) -> Optional[ConstraintHandler]:
        try:
            return self.get(kind)
        except KeyError:
            return None

    def has(self, kind) -> bool:
        return self.get_safe(kind) is not None

    def list(self) -> List[ConstraintHandler]:
        return list(self._handlers.values())

    def generate_id(self, kind) -> str:
        handler = self.get_safe(kind)
        hint = handler.short_name if handler else normalize_kind(kind)
        prefix = re.sub(r"[^a-z0-9]", "", hint, flags=re.IGNORECASE).upper() or "CONST"
        self._id_counter += 1
        return f"{prefix}{self._id_counter}"

    def create(self, kind, selections=None, **options) -> Constraint:
        """Create a constraint of a registered kind with a fresh id."""
        handler = self.get(kind)
        tolerance = options.pop("tolerance", None)
        return Constraint(
            id=self.generate_id(handler.kind),
            kind=_as_enum(handler.kind),
            selections=list(selections) if selections is not None else [None, None],
            tolerance=tolerance,
            options=options,
        )


def _as_enum(kind: str) -> Union[ConstraintKind, str]:
    try:
        return ConstraintKind(kind)
    except ValueError:
        return kind


async def evaluate_constraint(
    constraint: Constraint,
    context: SolverContext,
    registry: Optional[ConstraintRegistry] = None,
) -> ConstraintRunResult:
    """Run one constraint through its kind's handler.

    Raises:
        KeyError: the constraint's kind is not registered.
    """
    handler = (registry or ConstraintRegistry()).get(constraint.kind)
    outcome = handler.evaluate(constraint, context)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome

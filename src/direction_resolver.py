"""
Derive a unit direction and an anchor point from a geometric selection.

Faces give a normal, edges a tangent, points and components whatever the
host's generic helper or their descendant geometry can offer. Every call
re-reads world transforms: components move between iterations, so nothing
here is cached.

Resolution order (recorded on the result for diagnostics):
1. explicit accessor       (host averaged normal / explicit polyline)
2. world/geometric normal  (triangle sampling / vertex-buffer sampling)
3. element-direction helper supplied by the host
4. geometry-derived normal (descendant search, depth-limited)
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

import numpy as np
import trimesh

from assembly_scene import SelectionKind
from constraint_status import ConstraintError
from solver_context import SolverContext

logger = logging.getLogger(__name__)

MAX_FACE_TRIANGLES = 60
MAX_EDGE_SAMPLES = 256
MAX_SEARCH_DEPTH = 3
POWER_ITERATIONS = 10
DEGENERATE_LENGTH_SQ = 1e-10
CLOSED_LOOP_EPSILON = 1e-9


class ResolutionSource(Enum):
    """Where a resolved direction came from."""
    EXPLICIT_ACCESSOR = "explicit-accessor"
    WORLD_NORMAL = "world-normal"
    ELEMENT_DIRECTION = "element-direction"
    GEOMETRY_DERIVED = "geometry-derived"
    UNRESOLVED = "unresolved"


class UnresolvedDirectionError(ConstraintError):
    """No direction could be derived from a selection."""
    pass


class ClosedLoopEdgeError(ConstraintError):
    """The edge closes on itself, so it has no unique tangent."""
    pass


@dataclass
class DirectionInfo:
    """A resolved direction with its anchor.

    ``direction`` is either None or a unit vector.
    """
    direction: Optional[np.ndarray]
    origin: Optional[np.ndarray]
    source: ResolutionSource
    kind: SelectionKind
    object: Any = field(default=None, repr=False)
    component: Any = field(default=None, repr=False)
    attempted: List[ResolutionSource] = field(default_factory=list)


def describe_selection_label(label) -> str:
    """Human-readable label: element_A -> 'Element A', elements[1] -> 'Element 2'."""
    if not label:
        return "selection"
    text = str(label).strip()
    if text == "element_A":
        return "Element A"
    if text == "element_B":
        return "Element B"
    if text.startswith("elements[") and text.endswith("]") and text[9:-1].isdigit():
        return f"Element {int(text[9:-1]) + 1}"
    if not text:
        return "selection"
    words = text.replace("_", " ").split()
    return " ".join(w[:1].upper() + w[1:] for w in words)


def _unit(vec) -> Optional[np.ndarray]:
    if vec is None:
        return None
    arr = np.asarray(vec, dtype=float).reshape(-1)
    if arr.shape != (3,) or not np.all(np.isfinite(arr)):
        return None
    length_sq = float(arr @ arr)
    if length_sq <= DEGENERATE_LENGTH_SQ:
        return None
    return arr / np.sqrt(length_sq)


def _call_optional(obj, name: str):
    accessor = getattr(obj, name, None)
    if not callable(accessor):
        return None
    return accessor()


# ─── Faces ───────────────────────────────────────────────────────────────────

def _world_matrix(obj) -> np.ndarray:
    matrix = _call_optional(obj, "world_matrix")
    return np.eye(4) if matrix is None else np.asarray(matrix, dtype=float)


def sampled_face_normal(obj) -> Optional[np.ndarray]:
    """Average cross(edge1, edge2) over up to 60 of the object's world triangles."""
    mesh = getattr(obj, "mesh", None)
    if mesh is None:
        return None
    triangles = np.asarray(getattr(mesh, "triangles", []), dtype=float)
    if triangles.ndim != 3 or len(triangles) == 0:
        return None

    triangles = triangles[:MAX_FACE_TRIANGLES]
    world = trimesh.transform_points(triangles.reshape(-1, 3), _world_matrix(obj)).reshape(-1, 3, 3)
    crosses = np.cross(world[:, 1] - world[:, 0], world[:, 2] - world[:, 0])
    keep = np.einsum("ij,ij->i", crosses, crosses) > DEGENERATE_LENGTH_SQ
    if not np.any(keep):
        return None
    accum = crosses[keep].mean(axis=0)
    if float(accum @ accum) <= DEGENERATE_LENGTH_SQ:
        return None
    return accum / np.linalg.norm(accum)


def descendant_normal(obj, depth: int = 0) -> Optional[np.ndarray]:
    """Depth-first search for a node with derivable triangle normals."""
    if obj is None or depth > MAX_SEARCH_DEPTH:
        return None
    normal = sampled_face_normal(obj)
    if normal is not None:
        return normal
    for child in getattr(obj, "children", None) or []:
        normal = descendant_normal(child, depth + 1)
        if normal is not None:
            return normal
    return None


# ─── Edges ───────────────────────────────────────────────────────────────────

def sample_edge_points(obj) -> Optional[np.ndarray]:
    """Up to 256 ordered world-space samples along an edge.

    An explicit polyline wins; otherwise the raw vertex buffer is sampled
    at evenly spaced indices, always keeping the last one.
    """
    points = _call_optional(obj, "world_polyline")
    if points is None:
        raw = getattr(obj, "vertices", None)
        if raw is None:
            return None
        points = trimesh.transform_points(
            np.asarray(raw, dtype=float).reshape(-1, 3), _world_matrix(obj),
        )
    points = np.asarray(points, dtype=float).reshape(-1, 3)
    if len(points) > MAX_EDGE_SAMPLES:
        idx = np.linspace(0, len(points) - 1, MAX_EDGE_SAMPLES).round().astype(int)
        points = points[np.unique(idx)]
    return points


def principal_axis(points: np.ndarray) -> Optional[np.ndarray]:
    """Dominant eigenvector of the points' covariance by power iteration.

    Seeded along the coordinate axis with the largest variance; at most 10
    iterations. Returns None when the spread is degenerate.
    """
    centered = points - points.mean(axis=0)
    cov = centered.T @ centered / len(points)
    variances = np.diag(cov)
    if float(variances.max()) <= DEGENERATE_LENGTH_SQ:
        return None

    axis = np.zeros(3)
    axis[int(np.argmax(variances))] = 1.0
    for _ in range(POWER_ITERATIONS):
        nxt = cov @ axis
        length = float(np.linalg.norm(nxt))
        if length <= 1e-15:
            return None
        nxt /= length
        converged = float(np.linalg.norm(nxt - axis)) < 1e-12
        axis = nxt
        if converged:
            break
    return _unit(axis)


def _aligned_segment_sum(points: np.ndarray) -> Optional[np.ndarray]:
    # Segments are flipped onto the running sum so back-tracking adds up.
    total = np.zeros(3)
    for seg in np.diff(points, axis=0):
        if float(seg @ seg) <= DEGENERATE_LENGTH_SQ:
            continue
        total += -seg if float(total @ seg) < 0 else seg
    return _unit(total)


def edge_tangent(points: np.ndarray, details: Optional[dict] = None) -> Optional[np.ndarray]:
    """Robust tangent of an open polyline, oriented along its chord.

    Raises:
        ClosedLoopEdgeError: first and last samples coincide.
    """
    if points is None or len(points) < 2:
        return None
    chord = points[-1] - points[0]
    if float(np.linalg.norm(chord)) <= CLOSED_LOOP_EPSILON:
        raise ClosedLoopEdgeError(
            "Closed edge loop has no unique tangent direction.",
            details=details,
        )

    tangent = principal_axis(points)
    if tangent is None:
        tangent = _aligned_segment_sum(points)
    if tangent is None:
        tangent = _unit(chord)
    if tangent is None:
        return None
    if float(tangent @ chord) < 0:
        tangent = -tangent
    return tangent


# ─── Resolver ────────────────────────────────────────────────────────────────

class DirectionResolver:
    """Resolves selections against the host described by a SolverContext."""

    def __init__(self, context: SolverContext):
        self.context = context

    def resolve_direction(self, selection, label: Optional[str] = None) -> DirectionInfo:
        """Resolve a selection to a unit direction plus anchor.

        Raises:
            ClosedLoopEdgeError: the selection is a closed edge loop.
            UnresolvedDirectionError: every source in the chain failed.
        """
        ctx = self.context
        obj = ctx.resolve_object(selection)
        component = ctx.resolve_component(selection)
        ctx.refresh_world()

        kind = self._kind_of(selection, obj)
        details = {
            "selection_label": describe_selection_label(label or getattr(selection, "label", None)),
            "selection": getattr(selection, "name", selection),
            "object_name": getattr(obj, "name", None),
            "component_name": getattr(component, "name", None),
            "kind": kind.value,
        }
        attempted: List[ResolutionSource] = []

        direction, source = None, ResolutionSource.UNRESOLVED
        if obj is not None:
            direction, source = self._resolve(obj, kind, attempted, details)

        if direction is None:
            attempted.append(ResolutionSource.UNRESOLVED)
            details["attempted"] = [s.value for s in attempted]
            logger.error("Failed to resolve direction for selection: %s", details)
            raise UnresolvedDirectionError(
                f"Unable to resolve a direction for {details['selection_label']}.",
                details=details,
            )

        return DirectionInfo(
            direction=direction,
            origin=self._resolve_origin(obj, component),
            source=source,
            kind=kind,
            object=obj,
            component=component,
            attempted=attempted,
        )

    def _kind_of(self, selection, obj) -> SelectionKind:
        for candidate in (getattr(selection, "kind", None), getattr(obj, "kind", None)):
            if isinstance(candidate, SelectionKind) and candidate is not SelectionKind.UNKNOWN:
                return candidate
        return SelectionKind.UNKNOWN

    def _resolve(self, obj, kind: SelectionKind, attempted, details):
        if kind is SelectionKind.FACE:
            attempted.append(ResolutionSource.EXPLICIT_ACCESSOR)
            direction = _unit(_call_optional(obj, "average_normal"))
            if direction is not None:
                return direction, ResolutionSource.EXPLICIT_ACCESSOR
            attempted.append(ResolutionSource.WORLD_NORMAL)
            direction = sampled_face_normal(obj)
            if direction is not None:
                return direction, ResolutionSource.WORLD_NORMAL

        elif kind is SelectionKind.EDGE:
            has_polyline = callable(getattr(obj, "world_polyline", None)) and obj.world_polyline() is not None
            source = ResolutionSource.EXPLICIT_ACCESSOR if has_polyline else ResolutionSource.WORLD_NORMAL
            attempted.append(source)
            direction = edge_tangent(sample_edge_points(obj), details=details)
            if direction is not None:
                return direction, source

        helper = self.context.element_direction
        if helper is not None:
            attempted.append(ResolutionSource.ELEMENT_DIRECTION)
            direction = _unit(helper(obj))
            if direction is not None:
                return direction, ResolutionSource.ELEMENT_DIRECTION

        attempted.append(ResolutionSource.GEOMETRY_DERIVED)
        direction = descendant_normal(obj)
        if direction is not None:
            return direction, ResolutionSource.GEOMETRY_DERIVED
        return None, ResolutionSource.UNRESOLVED

    def _resolve_origin(self, obj, component) -> Optional[np.ndarray]:
        return resolve_origin(obj, component)


def resolve_origin(obj, component) -> Optional[np.ndarray]:
    """Anchor point: representative point, else object position, else component position."""
    for node, accessor in (
        (obj, "representative_point"),
        (obj, "world_position"),
        (component, "world_position"),
    ):
        if node is None:
            continue
        point = _call_optional(node, accessor)
        if point is not None:
            return np.asarray(point, dtype=float).reshape(3)
    return None


def resolve_direction(selection, context: SolverContext, label: Optional[str] = None) -> DirectionInfo:
    """Standalone entry point, e.g. for drawing a resolved normal."""
    return DirectionResolver(context).resolve_direction(selection, label=label)

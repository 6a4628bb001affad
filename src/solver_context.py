"""
Host collaborator bundle handed to every constraint evaluation.

The solver core never touches scene objects directly. Everything it needs
from the host (selection lookup, fixed-state queries, transform mutation)
arrives through a SolverContext, which keeps the evaluators unit-testable
with plain callables.
"""
import math
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

import numpy as np

DEFAULT_SOLVER_TOLERANCE = 1e-4
DEFAULT_SOLVER_ITERATIONS = 1
DEFAULT_TRANSLATION_GAIN = 0.5
DEFAULT_ROTATION_GAIN = 0.5


def _never_fixed(component) -> bool:
    return False


def _reject(component, value) -> bool:
    return False


def _resolve_nothing(selection):
    return None


@dataclass
class SolverContext:
    """Everything a constraint kind may consult or mutate during a solve.

    Attributes:
        tolerance: Base solver tolerance (radians for angles, scene units
            for distances).
        rotation_gain: Fraction in [0, 1] of the ideal rotation applied per call.
        translation_gain: Fraction in [0, 1] of the ideal translation applied.
        resolve_object: selection -> geometry-bearing node (or None).
        resolve_component: selection -> owning rigid component (or None).
        apply_rotation: (component, quaternion [w, x, y, z]) -> bool.
        apply_translation: (component, delta (3,)) -> bool.
        is_component_fixed: component -> bool.
        scene: Optional object exposing update_matrix_world().
        element_direction: Optional generic direction helper, obj -> (3,) or None.
        iteration: Zero-based iteration index of the current pass.
        max_iterations: Iteration budget of the current run.
        debug_mode: Host asked for verbose diagnostics.
    """
    tolerance: float = DEFAULT_SOLVER_TOLERANCE
    rotation_gain: float = 1.0
    translation_gain: float = 1.0
    resolve_object: Callable[[Any], Any] = _resolve_nothing
    resolve_component: Callable[[Any], Any] = _resolve_nothing
    apply_rotation: Callable[[Any, np.ndarray], Any] = _reject
    apply_translation: Callable[[Any, np.ndarray], Any] = _reject
    is_component_fixed: Callable[[Any], bool] = _never_fixed
    scene: Optional[Any] = None
    element_direction: Optional[Callable[[Any], Optional[np.ndarray]]] = None
    iteration: int = 0
    max_iterations: int = 1
    debug_mode: bool = False

    def with_iteration(self, iteration: int, max_iterations: int) -> "SolverContext":
        """Return a copy stamped with the current pass."""
        return replace(self, iteration=iteration, max_iterations=max_iterations)

    def refresh_world(self) -> None:
        """Ask the host to bring world transforms up to date, if it can."""
        update = getattr(self.scene, "update_matrix_world", None)
        if callable(update):
            update()


# ─── Numeric clamping ────────────────────────────────────────────────────────

def to_finite_number(value, fallback: float) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return fallback
    return num if math.isfinite(num) else fallback


def clamp_gain(value, fallback: float) -> float:
    """Clamp a gain into [0, 1]; unusable input gives the fallback."""
    num = to_finite_number(value, fallback)
    return min(1.0, max(0.0, num))


def clamp_iterations(value, fallback: int = DEFAULT_SOLVER_ITERATIONS) -> int:
    num = to_finite_number(value, float(fallback))
    count = int(math.floor(num))
    return count if count >= 1 else fallback


def normalize_tolerance(value, fallback: float = DEFAULT_SOLVER_TOLERANCE) -> float:
    tol = abs(to_finite_number(value, fallback))
    return tol or fallback

"""
Outcome classifications shared by every constraint kind on the runner.

Status is informational only: the runner never stops because of one. A run
ends when its iteration budget is spent or when it is cancelled.
"""
import math
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


class ConstraintStatus(Enum):
    """Closed set of constraint outcomes."""
    SATISFIED = "satisfied"
    ADJUSTED = "adjusted"
    PENDING = "pending"
    BLOCKED = "blocked"
    ERROR = "error"
    INVALID_SELECTION = "invalid-selection"
    NORMAL_RESOLUTION_FAILED = "normal-resolution-failed"
    # Kind-specific additions
    INCOMPLETE = "incomplete"
    FIXED = "fixed"
    NOOP = "noop"
    APPLY_FAILED = "apply-failed"
    UNIMPLEMENTED = "unimplemented"
    PENDING_COMPONENT = "pending-component"


CORE_STATUSES = frozenset({
    ConstraintStatus.SATISFIED,
    ConstraintStatus.ADJUSTED,
    ConstraintStatus.PENDING,
    ConstraintStatus.BLOCKED,
    ConstraintStatus.ERROR,
    ConstraintStatus.INVALID_SELECTION,
    ConstraintStatus.NORMAL_RESOLUTION_FAILED,
})


class ConstraintError(Exception):
    """Base class for failures raised while evaluating a constraint.

    Carries a ``details`` dict so callers can report what was attempted.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details: Dict[str, Any] = dict(details or {})


class InvalidSelectionError(ConstraintError):
    """Selections do not map to two distinct assembly components."""
    pass


@dataclass
class ConstraintRunResult:
    """Outcome of one evaluation of one constraint."""
    ok: bool
    status: str
    satisfied: bool = False
    applied: bool = False
    angle_error: Optional[float] = None       # radians
    angle_error_deg: Optional[float] = None
    error: Optional[float] = None             # generic error metric (angle or distance)
    message: str = ""
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[BaseException] = None
    rotations: List[Dict[str, Any]] = field(default_factory=list)
    moves: List[Dict[str, Any]] = field(default_factory=list)
    info_a: Any = None
    info_b: Any = None
    iteration: Optional[int] = None
    constraint_id: Optional[str] = None
    kind: Optional[str] = None

    @property
    def status_enum(self) -> Optional[ConstraintStatus]:
        try:
            return ConstraintStatus(self.status)
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        """Plain summary without live geometry or exception objects."""
        return {
            "constraint_id": self.constraint_id,
            "kind": self.kind,
            "ok": self.ok,
            "status": self.status,
            "satisfied": self.satisfied,
            "applied": self.applied,
            "angle_error": self.angle_error,
            "angle_error_deg": self.angle_error_deg,
            "error": self.error,
            "message": self.message,
            "iteration": self.iteration,
            "exception": repr(self.exception) if self.exception else None,
        }


_RESULT_FIELDS = {f.name for f in fields(ConstraintRunResult)}


def _finite_or_none(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def finalize_result(raw, iteration: Optional[int] = None) -> ConstraintRunResult:
    """Normalise whatever a constraint kind returned into a ConstraintRunResult.

    Accepts a ConstraintRunResult, a dict with the same keys, or None.
    A missing status is inferred: not ok -> error, satisfied -> satisfied,
    applied -> adjusted, otherwise pending.
    """
    if isinstance(raw, ConstraintRunResult):
        payload = {f: getattr(raw, f) for f in _RESULT_FIELDS}
    elif isinstance(raw, dict):
        payload = {k: v for k, v in raw.items() if k in _RESULT_FIELDS}
    else:
        payload = {}

    ok = payload.get("ok") is not False
    satisfied = bool(payload.get("satisfied"))
    applied = bool(payload.get("applied"))
    status = payload.get("status")
    if isinstance(status, ConstraintStatus):
        status = status.value
    status = status.strip() if isinstance(status, str) else ""
    if not status:
        if not ok:
            status = ConstraintStatus.ERROR.value
        elif satisfied:
            status = ConstraintStatus.SATISFIED.value
        elif applied:
            status = ConstraintStatus.ADJUSTED.value
        else:
            status = ConstraintStatus.PENDING.value

    message = payload.get("message")
    payload.update(
        ok=ok,
        status=status,
        satisfied=satisfied,
        applied=applied,
        message=message if isinstance(message, str) else "",
        error=_finite_or_none(payload.get("error")),
        angle_error=_finite_or_none(payload.get("angle_error")),
        angle_error_deg=_finite_or_none(payload.get("angle_error_deg")),
        diagnostics=dict(payload.get("diagnostics") or {}),
        rotations=list(payload.get("rotations") or []),
        moves=list(payload.get("moves") or []),
    )
    if iteration is not None:
        payload["iteration"] = iteration
    return ConstraintRunResult(**payload)


# ─── Presentation ────────────────────────────────────────────────────────────

@dataclass
class StatusInfo:
    """Short label, tooltip text and error flag for a status."""
    label: str
    title: str = ""
    error: bool = False


_STATUS_TEXT = {
    ConstraintStatus.UNIMPLEMENTED: ("Unimplemented", "Constraint solver not implemented yet.", True),
    ConstraintStatus.SATISFIED: ("Satisfied", "Constraint satisfied within tolerance.", False),
    ConstraintStatus.ADJUSTED: ("Adjusting", "Constraint nudging components toward the solution.", False),
    ConstraintStatus.BLOCKED: ("Blocked", "Constraint cannot adjust locked components.", True),
    ConstraintStatus.PENDING: ("Pending", "Constraint awaiting convergence.", False),
    ConstraintStatus.ERROR: ("Error", "Constraint evaluation failed.", True),
    ConstraintStatus.INCOMPLETE: ("Incomplete", "Select the required components to define the constraint.", False),
    ConstraintStatus.INVALID_SELECTION: ("Invalid selection", "Unable to resolve selections to two components.", True),
    ConstraintStatus.NORMAL_RESOLUTION_FAILED: ("Unresolved", "Unable to derive a direction from a selection.", True),
    ConstraintStatus.PENDING_COMPONENT: ("Pending component", "Offset stored but no component selected to move.", False),
    ConstraintStatus.FIXED: ("Locked", "Both components are fixed; nothing moved.", False),
    ConstraintStatus.NOOP: ("No change", "Selections already satisfy this constraint.", False),
    ConstraintStatus.APPLY_FAILED: ("Failed", "Apply failed", True),
}

# Statuses whose stored message never replaces the default title.
_FIXED_TITLES = {ConstraintStatus.INCOMPLETE, ConstraintStatus.INVALID_SELECTION}


def status_info(status: Optional[str], message: str = "") -> StatusInfo:
    """Describe a status for display next to its constraint."""
    if not status or status == "idle":
        return StatusInfo(label="")
    try:
        known = ConstraintStatus(status)
    except ValueError:
        return StatusInfo(label=status[:1].upper() + status[1:], title=message or "")

    label, title, is_error = _STATUS_TEXT[known]
    if message and known not in _FIXED_TITLES:
        title = message
    return StatusInfo(label=label, title=title, error=is_error)

"""
In-memory assembly scene: rigid components carrying selectable geometry.

This is the reference host for the constraint solver. Components own faces
(trimesh meshes), edges (shapely LineStrings with z) and vertices, all stored
in the component's local frame. World placement is a position plus a unit
quaternion in trimesh's [w, x, y, z] order.
"""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Set

import numpy as np
import trimesh
from scipy.spatial.transform import Rotation
from shapely.geometry import LineString

from solver_context import (
    SolverContext,
    clamp_gain,
    normalize_tolerance,
    DEFAULT_ROTATION_GAIN,
    DEFAULT_TRANSLATION_GAIN,
)

logger = logging.getLogger(__name__)

IDENTITY_QUATERNION = np.array([1.0, 0.0, 0.0, 0.0])


class SelectionKind(Enum):
    """What a selection refers to."""
    FACE = "face"
    EDGE = "edge"
    POINT = "point"
    COMPONENT = "component"
    UNKNOWN = "unknown"


@dataclass
class Selection:
    """A reference to a named element or component in the scene."""
    name: str
    kind: SelectionKind = SelectionKind.UNKNOWN
    label: str = ""


@dataclass(eq=False)
class GeometryElement:
    """
    A selectable piece of geometry owned by (at most) one component.

    Attributes:
        name: Scene-unique name used by selections
        kind: Face, edge, point, ...
        mesh: Local-space triangles (faces)
        polyline: Local-space edge samples as a 3D LineString
        vertices: Raw local-space vertex buffer (edges without a polyline)
        point: Local-space position (vertices)
        children: Nested geometry searched when the node itself has none
        expose_average_normal: Offer the averaged-normal accessor for faces
    """
    name: str
    kind: SelectionKind = SelectionKind.UNKNOWN
    mesh: Optional[trimesh.Trimesh] = None
    polyline: Optional[LineString] = None
    vertices: Optional[np.ndarray] = None
    point: Optional[np.ndarray] = None
    children: List["GeometryElement"] = field(default_factory=list)
    expose_average_normal: bool = True
    component: Optional["AssemblyComponent"] = field(default=None, repr=False)

    def world_matrix(self) -> np.ndarray:
        if self.component is None:
            return np.eye(4)
        return self.component.world_matrix()

    def average_normal(self) -> Optional[np.ndarray]:
        """Area-weighted mean face normal in world space, or None."""
        if not self.expose_average_normal or self.mesh is None or len(self.mesh.faces) == 0:
            return None
        weighted = (self.mesh.face_normals * self.mesh.area_faces[:, None]).sum(axis=0)
        world = self.world_matrix()[:3, :3] @ weighted
        length = float(np.linalg.norm(world))
        if length <= 1e-12:
            return None
        return world / length

    def world_polyline(self) -> Optional[np.ndarray]:
        """Explicit polyline samples in world space, or None."""
        if self.polyline is None or self.polyline.is_empty:
            return None
        coords = np.asarray(self.polyline.coords, dtype=float)
        if coords.shape[1] != 3:
            return None
        return trimesh.transform_points(coords, self.world_matrix())

    def local_points(self) -> Optional[np.ndarray]:
        if self.mesh is not None and len(self.mesh.vertices):
            return np.asarray(self.mesh.vertices, dtype=float)
        if self.polyline is not None and not self.polyline.is_empty:
            return np.asarray(self.polyline.coords, dtype=float)
        if self.vertices is not None and len(self.vertices):
            return np.asarray(self.vertices, dtype=float).reshape(-1, 3)
        if self.point is not None:
            return np.asarray(self.point, dtype=float).reshape(1, 3)
        return None

    def representative_point(self) -> Optional[np.ndarray]:
        """Mean of the element's world-space points."""
        pts = self.local_points()
        if pts is None:
            return None
        return trimesh.transform_points(pts, self.world_matrix()).mean(axis=0)

    def world_position(self) -> np.ndarray:
        return self.world_matrix()[:3, 3].copy()


@dataclass(eq=False)
class AssemblyComponent:
    """
    An independently transformable rigid part.

    Attributes:
        name: Unique identifier
        position: World position (3,)
        quaternion: World orientation, unit [w, x, y, z]
        fixed: Locked by the user
        fixed_by_constraint: Locked by a fixed constraint
        elements: Selectable geometry in the component's local frame
    """
    name: str
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    quaternion: np.ndarray = field(default_factory=lambda: IDENTITY_QUATERNION.copy())
    fixed: bool = False
    fixed_by_constraint: bool = False
    elements: List[GeometryElement] = field(default_factory=list)

    kind = SelectionKind.COMPONENT

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=float).reshape(3)
        self.quaternion = trimesh.transformations.unit_vector(
            np.asarray(self.quaternion, dtype=float).reshape(4)
        )
        self._matrix: Optional[np.ndarray] = None
        for element in self.elements:
            self._adopt(element)

    def _adopt(self, element: GeometryElement):
        element.component = self
        for child in element.children:
            self._adopt(child)

    @property
    def children(self) -> List[GeometryElement]:
        return self.elements

    def add_element(self, element: GeometryElement) -> GeometryElement:
        self._adopt(element)
        self.elements.append(element)
        return element

    def iter_elements(self) -> Iterator[GeometryElement]:
        stack = list(reversed(self.elements))
        while stack:
            element = stack.pop()
            yield element
            stack.extend(reversed(element.children))

    def rotation_matrix(self) -> np.ndarray:
        return trimesh.transformations.quaternion_matrix(self.quaternion)[:3, :3]

    def world_matrix(self) -> np.ndarray:
        if self._matrix is None:
            self.update_matrix_world()
        return self._matrix

    def update_matrix_world(self):
        """Renormalise the orientation and rebuild the cached world matrix."""
        self.quaternion = trimesh.transformations.unit_vector(self.quaternion)
        matrix = trimesh.transformations.quaternion_matrix(self.quaternion)
        matrix[:3, 3] = self.position
        self._matrix = matrix

    def world_position(self) -> np.ndarray:
        return self.position.copy()

    def rotate(self, quaternion: np.ndarray):
        """Premultiply a world-space rotation about the component origin."""
        self.quaternion = trimesh.transformations.quaternion_multiply(quaternion, self.quaternion)
        self.update_matrix_world()

    def translate(self, delta: np.ndarray):
        self.position = self.position + np.asarray(delta, dtype=float)
        self.update_matrix_world()

    def euler_angles(self) -> np.ndarray:
        """Orientation as XYZ Euler angles (radians)."""
        w, x, y, z = self.quaternion
        return Rotation.from_quat([x, y, z, w]).as_euler("xyz")

    def rotation_angle(self) -> float:
        """Total rotation away from identity (radians)."""
        w, x, y, z = self.quaternion
        return float(Rotation.from_quat([x, y, z, w]).magnitude())


class AssemblyScene:
    """Components plus the host callbacks the solver needs."""

    def __init__(self, components: Optional[Sequence[AssemblyComponent]] = None):
        self.components: List[AssemblyComponent] = list(components or [])
        self.loose_elements: List[GeometryElement] = []
        self.updated_components: Set[str] = set()

    # ─── Building ────────────────────────────────────────────────────────────

    def add_component(self, component: AssemblyComponent) -> AssemblyComponent:
        self.components.append(component)
        return component

    def add_loose_element(self, element: GeometryElement) -> GeometryElement:
        """Geometry that belongs to no component (e.g. a datum plane)."""
        self.loose_elements.append(element)
        return element

    def get_component(self, name: str) -> Optional[AssemblyComponent]:
        for comp in self.components:
            if comp.name == name:
                return comp
        return None

    def iter_nodes(self) -> Iterator:
        for comp in self.components:
            yield comp
            yield from comp.iter_elements()
        for element in self.loose_elements:
            yield element
            stack = list(element.children)
            while stack:
                child = stack.pop(0)
                yield child
                stack.extend(child.children)

    # ─── Host callbacks ──────────────────────────────────────────────────────

    def update_matrix_world(self):
        for comp in self.components:
            comp.update_matrix_world()

    def resolve_object(self, selection):
        """Find the node a selection refers to.

        Accepts a Selection, a name, a node, or a list (first non-None item).
        A name shared by several nodes prefers one owned by a component.
        """
        target = selection
        if isinstance(selection, (list, tuple)):
            target = next((item for item in selection if item is not None), None)
        if target is None:
            return None
        if isinstance(target, (GeometryElement, AssemblyComponent)):
            return target

        name = target.name if isinstance(target, Selection) else target
        if not isinstance(name, str) or not name:
            return None
        best = None
        for node in self.iter_nodes():
            if node.name != name:
                continue
            if best is None:
                best = node
            if _owning_component(node) is not None and _owning_component(best) is None:
                best = node
        return best

    def resolve_component(self, selection) -> Optional[AssemblyComponent]:
        return _owning_component(self.resolve_object(selection))

    def is_component_fixed(self, component) -> bool:
        if component is None:
            return True
        return bool(getattr(component, "fixed", False) or getattr(component, "fixed_by_constraint", False))

    def apply_rotation(self, component, quaternion) -> bool:
        """Premultiply a [w, x, y, z] rotation onto a component."""
        if component is None or quaternion is None:
            return False
        try:
            q = np.asarray(quaternion, dtype=float).reshape(4)
        except (TypeError, ValueError):
            return False
        if not np.all(np.isfinite(q)):
            logger.debug("Rejected non-finite rotation for %s", component.name)
            return False
        length_sq = float(q @ q)
        if length_sq <= 1e-12:
            return False
        if abs(1.0 - length_sq) > 1e-6:
            q = q / math.sqrt(length_sq)
        component.rotate(q)
        self.updated_components.add(component.name)
        return True

    def apply_translation(self, component, delta) -> bool:
        if component is None or delta is None:
            return False
        try:
            vec = np.asarray(delta, dtype=float).reshape(3)
        except (TypeError, ValueError):
            return False
        if not np.all(np.isfinite(vec)):
            logger.debug("Rejected non-finite translation for %s", component.name)
            return False
        if float(vec @ vec) == 0.0:
            return False
        component.translate(vec)
        self.updated_components.add(component.name)
        return True

    def make_context(
        self,
        tolerance: float = 1e-4,
        rotation_gain: float = DEFAULT_ROTATION_GAIN,
        translation_gain: float = DEFAULT_TRANSLATION_GAIN,
        debug_mode: bool = False,
    ) -> SolverContext:
        """Bundle this scene's callbacks into a SolverContext."""
        return SolverContext(
            tolerance=normalize_tolerance(tolerance),
            rotation_gain=clamp_gain(rotation_gain, DEFAULT_ROTATION_GAIN),
            translation_gain=clamp_gain(translation_gain, DEFAULT_TRANSLATION_GAIN),
            resolve_object=self.resolve_object,
            resolve_component=self.resolve_component,
            apply_rotation=self.apply_rotation,
            apply_translation=self.apply_translation,
            is_component_fixed=self.is_component_fixed,
            scene=self,
            debug_mode=debug_mode,
        )


def _owning_component(node) -> Optional[AssemblyComponent]:
    if node is None:
        return None
    if isinstance(node, AssemblyComponent):
        return node
    return getattr(node, "component", None)


# ─── Element factories ───────────────────────────────────────────────────────

def face_element(name: str, mesh: trimesh.Trimesh, expose_average_normal: bool = True) -> GeometryElement:
    return GeometryElement(
        name=name,
        kind=SelectionKind.FACE,
        mesh=mesh,
        expose_average_normal=expose_average_normal,
    )


def edge_element(name: str, points, as_polyline: bool = True) -> GeometryElement:
    """Edge from ordered local points; either an explicit polyline or a raw buffer."""
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    if as_polyline:
        return GeometryElement(name=name, kind=SelectionKind.EDGE, polyline=LineString(pts))
    return GeometryElement(name=name, kind=SelectionKind.EDGE, vertices=pts)


def vertex_element(name: str, point) -> GeometryElement:
    return GeometryElement(
        name=name,
        kind=SelectionKind.POINT,
        point=np.asarray(point, dtype=float).reshape(3),
    )


_AXIS_LABELS = ("x", "y", "z")


def _facet_label(normal: np.ndarray) -> str:
    axis = int(np.argmax(np.abs(normal)))
    sign = "+" if normal[axis] >= 0 else "-"
    return f"{sign}{_AXIS_LABELS[axis]}"


def box_component(
    name: str,
    extents=(100.0, 100.0, 100.0),
    position=(0.0, 0.0, 0.0),
    quaternion=None,
    fixed: bool = False,
) -> AssemblyComponent:
    """A box component with one FACE element per side, named ``<name>:+z`` etc."""
    mesh = trimesh.creation.box(extents=list(extents))
    comp = AssemblyComponent(
        name=name,
        position=np.asarray(position, dtype=float),
        quaternion=IDENTITY_QUATERNION.copy() if quaternion is None else np.asarray(quaternion, dtype=float),
        fixed=fixed,
    )
    for facet, normal in zip(mesh.facets, mesh.facets_normal):
        side = mesh.submesh([facet], append=True)
        comp.add_element(face_element(f"{name}:{_facet_label(normal)}", side))
    return comp

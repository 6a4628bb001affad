"""
Shared test fixtures for the assembly constraint solver tests.
"""
import sys
from pathlib import Path

import numpy as np
import pytest
import trimesh

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from assembly_scene import AssemblyScene, Selection, SelectionKind, box_component


def tilt_quaternion(degrees: float, axis=(1.0, 0.0, 0.0)) -> np.ndarray:
    """[w, x, y, z] rotation about ``axis``."""
    return trimesh.transformations.quaternion_about_axis(np.radians(degrees), list(axis))


def face(name: str, label: str = "") -> Selection:
    return Selection(name, SelectionKind.FACE, label=label)


@pytest.fixture
def make_scene():
    """Factory: fixed-or-movable base plus a second box tilted about X."""
    def _make(tilt_deg=0.0, base_fixed=True, top_fixed=False, tilt_axis=(1.0, 0.0, 0.0)):
        scene = AssemblyScene()
        scene.add_component(box_component("base", extents=(200, 200, 20), fixed=base_fixed))
        scene.add_component(box_component(
            "top",
            extents=(100, 100, 40),
            position=(0.0, 0.0, 100.0),
            quaternion=tilt_quaternion(tilt_deg, tilt_axis),
            fixed=top_fixed,
        ))
        return scene
    return _make


@pytest.fixture
def aligned_scene(make_scene):
    """Base (fixed) and top box sharing orientation."""
    return make_scene()


@pytest.fixture
def tilted_scene(make_scene):
    """Top box tilted 30 degrees about X over a fixed base."""
    return make_scene(tilt_deg=30.0)


@pytest.fixture
def line_points():
    """Ordered samples along a slightly noisy straight line in direction (1, 2, 0)."""
    rng = np.random.default_rng(7)
    t = np.linspace(0.0, 50.0, 40)
    direction = np.array([1.0, 2.0, 0.0]) / np.sqrt(5.0)
    pts = t[:, None] * direction[None, :]
    pts += rng.normal(scale=0.01, size=pts.shape)
    pts[0] = 0.0
    pts[-1] = 50.0 * direction
    return pts

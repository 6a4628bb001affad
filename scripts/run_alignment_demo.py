#!/usr/bin/env python3
"""
Run the constraint solver on a two-box assembly and print convergence.

A fixed base plate and a tilted bracket are built with trimesh. The bracket
is constrained parallel (or touch-aligned) to the base and the runner nudges
it back over the requested number of iterations.

Usage:
    python scripts/run_alignment_demo.py
    python scripts/run_alignment_demo.py --tilt 150 --iterations 40 --gain 1.0
    python scripts/run_alignment_demo.py --kind touch_align --output results.json -v
"""
import sys
import json
import argparse
import asyncio
import logging
import math
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import trimesh

from assembly_constraints import ConstraintRegistry
from assembly_scene import AssemblyScene, Selection, SelectionKind, box_component
from constraint_runner import ConstraintRunner, SolverConfig
from constraint_status import status_info


def build_scene(tilt_deg: float) -> AssemblyScene:
    """Fixed base plate plus a bracket tilted about X."""
    tilt = trimesh.transformations.quaternion_about_axis(math.radians(tilt_deg), [1.0, 0.0, 0.0])
    scene = AssemblyScene()
    scene.add_component(box_component("base", extents=(200.0, 200.0, 20.0), fixed=True))
    scene.add_component(box_component(
        "bracket", extents=(80.0, 80.0, 40.0), position=(0.0, 0.0, 120.0), quaternion=tilt,
    ))
    return scene


def main():
    parser = argparse.ArgumentParser(
        description="Align a tilted bracket to a fixed base plate.",
    )
    parser.add_argument(
        "--kind", default="parallel",
        choices=["parallel", "anti_parallel", "touch_align"],
        help="Constraint kind to apply (default: parallel)",
    )
    parser.add_argument(
        "--tilt", type=float, default=35.0,
        help="Initial bracket tilt about X in degrees (default: 35)",
    )
    parser.add_argument(
        "--iterations", type=int, default=25,
        help="Solver iterations (default: 25)",
    )
    parser.add_argument(
        "--gain", type=float, default=0.5,
        help="Rotation and translation gain 0-1 (default: 0.5)",
    )
    parser.add_argument(
        "--tolerance", type=float, default=1e-4,
        help="Solver tolerance (default: 1e-4)",
    )
    parser.add_argument(
        "--delay", type=float, default=None,
        help="Seconds to wait between iterations",
    )
    parser.add_argument(
        "--output", default=None,
        help="Write final constraint results as JSON to this path",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Verbose logging",
    )

    args = parser.parse_args()

    # Logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = SolverConfig(
        tolerance=args.tolerance,
        iterations=args.iterations,
        rotation_gain=args.gain,
        translation_gain=args.gain,
        iteration_delay=args.delay,
        debug_mode=args.verbose,
    ).normalized()
    try:
        config.validate()
    except ValueError as exc:
        parser.error(str(exc))

    scene = build_scene(args.tilt)
    context = scene.make_context(
        tolerance=config.tolerance,
        rotation_gain=config.rotation_gain,
        translation_gain=config.translation_gain,
        debug_mode=config.debug_mode,
    )
    registry = ConstraintRegistry()
    bracket_face = "bracket:+z" if args.kind == "parallel" else "bracket:-z"
    constraint = registry.create(
        args.kind,
        selections=[
            Selection("base:+z", SelectionKind.FACE, label="element_A"),
            Selection(bracket_face, SelectionKind.FACE, label="element_B"),
        ],
        oppose_normals=args.kind == "touch_align",
    )

    def report(event):
        result = event.result
        if result is None:
            return
        err = result.angle_error_deg if result.angle_error_deg is not None else result.error
        err_text = "-" if err is None else f"{err:.4f}"
        print(f"  [{event.iteration + 1:3d}/{event.max_iterations}] {event.constraint_id}: "
              f"{result.status:<26s} error={err_text}")

    runner = ConstraintRunner(context, registry)
    options = config.run_options(on_constraint_end=report)

    print(f"Solving {constraint.id} ({args.kind}) for up to {config.iterations} iterations")
    results = asyncio.run(runner.run([constraint], config.iterations, options))

    bracket = scene.get_component("bracket")
    print("\nFinal state:")
    for result in results:
        info = status_info(result.status, result.message)
        print(f"  {result.constraint_id}: {info.label} - {info.title}")
    print(f"  Bracket euler (deg): {[round(math.degrees(a), 3) for a in bracket.euler_angles()]}")
    print(f"  Bracket position: {[round(float(v), 3) for v in bracket.position]}")

    if args.output:
        with open(args.output, "w") as f:
            json.dump([r.to_dict() for r in results], f, indent=2)
        print(f"  Results saved to {args.output}")

    print("\nDone.")


if __name__ == "__main__":
    main()

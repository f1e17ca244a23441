#!/usr/bin/env python3
"""
Fit axis-aligned boxes inside a solid mesh.

Samples the mesh's signed distance on a voxel grid, classifies and freezes the
field, seeds one box per interior region and minimizes every box's energy.
The whole session is written to a binary file, with a JSON summary beside it.

Usage:
    python scripts/fit_boxes.py --input model.stl
    python scripts/fit_boxes.py --input model.obj --resolution 96 --target -z --workers 8
    python scripts/fit_boxes.py --input model.ply --output out/ --check-gradient --verbose
"""
import sys
import os
import json
import argparse
import logging
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import trimesh

from box_energy import BoxEnergy, EnergyConfig
from box_optimizer import OptimizerConfig
from fitting_session import FittingSession
from grid_builder import AXIS_TARGETS, GridConfig, full_domain_box, generate_field, seed_boxes


def main():
    parser = argparse.ArgumentParser(
        description="Fit axis-aligned boxes inside a solid mesh.",
    )
    parser.add_argument(
        "--input", required=True,
        help="Path to input mesh file (STL, OBJ, GLB, PLY)",
    )
    parser.add_argument(
        "--output", default=None,
        help="Output directory (default: <input_dir>/<input_stem>_boxes/)",
    )
    parser.add_argument(
        "--resolution", type=int, default=64,
        help="Grid vertices along the longest axis (default: 64)",
    )
    parser.add_argument(
        "--target", default="z", choices=list(AXIS_TARGETS.keys()),
        help="Target direction stored with the field and boxes (default: z)",
    )
    parser.add_argument(
        "--kernel-distance", type=float, default=None,
        help="Kernel depth in mesh units (default: 2 voxels)",
    )
    parser.add_argument(
        "--volume-cost", type=float, default=0.05,
        help="Energy cost per unit volume (default: 0.05)",
    )
    parser.add_argument(
        "--min-edge", type=float, default=0.0,
        help="Shortest box edge before the barrier kicks in (default: off)",
    )
    parser.add_argument(
        "--max-iterations", type=int, default=2000,
        help="Iteration cap per box (default: 2000)",
    )
    parser.add_argument(
        "--workers", type=int, default=None,
        help="Worker threads for large batches (default: CPU count)",
    )
    parser.add_argument(
        "--check-gradient", action="store_true",
        help="Compare analytic and finite-difference gradients on every seed",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    # Logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    # Resolve paths
    input_path = os.path.abspath(args.input)
    if not os.path.isfile(input_path):
        parser.error(f"Input file not found: {input_path}")

    if args.output:
        output_dir = os.path.abspath(args.output)
    else:
        stem = Path(input_path).stem
        output_dir = os.path.join(os.path.dirname(input_path), f"{stem}_boxes")
    os.makedirs(output_dir, exist_ok=True)

    mesh = trimesh.load(input_path, force="mesh")
    print(f"Loaded {input_path}: {len(mesh.vertices)} vertices, {len(mesh.faces)} faces")

    grid_config = GridConfig(
        resolution=args.resolution,
        kernel_distance=args.kernel_distance,
        target=AXIS_TARGETS[args.target],
    )
    field = generate_field(mesh, grid_config)

    boxes = seed_boxes(field)
    energy = BoxEnergy(field, EnergyConfig(volume_cost=args.volume_cost, min_edge=args.min_edge))
    if args.check_gradient:
        for i, box in enumerate(boxes):
            print(f"  Seed {i}: gradient error {energy.check_gradient(box):.3e}")

    results = boxes.minimize_all(
        energy,
        config=OptimizerConfig(max_iterations=args.max_iterations),
        max_workers=args.workers,
    )

    # Summary
    print(f"\nResult: {len(boxes)} boxes")
    for i, (box, result) in enumerate(zip(boxes, results)):
        dims = box.extents
        print(f"  box_{i}: {dims[0]:.3f} x {dims[1]:.3f} x {dims[2]:.3f} "
              f"energy {result.energy:.4g} ({result.status.value}, {result.iterations} it)")

    session = FittingSession(field=field, box=full_domain_box(field), solutions=boxes)
    session_path = os.path.join(output_dir, "session.bin")
    session.save(session_path)

    summary = {
        "input": input_path,
        "resolution": list(field.resolution),
        "bounds": [field.bounds.min_corner.tolist(), field.bounds.max_corner.tolist()],
        "target": field.target.tolist(),
        "boxes": [
            {
                "min": box.min_corner.tolist(),
                "max": box.max_corner.tolist(),
                "color": list(box.color),
                "energy": result.energy,
                "initial_energy": result.initial_energy,
                "status": result.status.value,
                "iterations": result.iterations,
            }
            for box, result in zip(boxes, results)
        ],
    }
    json_path = os.path.join(output_dir, "boxes.json")
    with open(json_path, "w") as f:
        json.dump(summary, f, indent=2)
    print(f"\nSession saved to {session_path}")
    print(f"Summary saved to {json_path}")

    print("\nDone.")


if __name__ == "__main__":
    main()

"""
Build a frozen field from a mesh and seed the boxes to optimize.

generate_field pads the mesh bounds, picks a cubic voxel size from the
requested resolution, samples the mesh's signed distance and classifies the
vertices. seed_boxes produces one starting box per connected kernel region.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import trimesh
from scipy.ndimage import label

from box_collection import BoxCollection
from fit_box import Box3D
from fitting_errors import ConfigurationError
from sdf_grid import ClassificationConfig, SignedDistanceField, WeightLevel
from surface_query import MeshSurfaceQuery

logger = logging.getLogger(__name__)

AXIS_TARGETS = {
    "x": (1.0, 0.0, 0.0),
    "y": (0.0, 1.0, 0.0),
    "z": (0.0, 0.0, 1.0),
    "-x": (-1.0, 0.0, 0.0),
    "-y": (0.0, -1.0, 0.0),
    "-z": (0.0, 0.0, -1.0),
}

# Seed colours, cycled.
_PALETTE = [
    (228, 26, 28), (55, 126, 184), (77, 175, 74), (152, 78, 163),
    (255, 127, 0), (166, 86, 40), (247, 129, 191), (153, 153, 153),
]


@dataclass
class GridConfig:
    """Configuration for field generation."""
    resolution: int = 64                # vertices along the longest axis
    padding_units: float = 2.0          # empty margin around the mesh, in voxels
    kernel_distance: Optional[float] = None  # absolute depth; None -> kernel_distance_units
    kernel_distance_units: float = 2.0
    target: Tuple[float, float, float] = (0.0, 0.0, 1.0)
    freeze: bool = True
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)


def grid_layout(
    mesh_bounds: np.ndarray,
    config: GridConfig,
) -> Tuple[Tuple[int, int, int], np.ndarray, np.ndarray, float]:
    """Per-axis resolution and padded bounds for cubic voxels.

    Returns:
        (resolution, min_corner, max_corner, voxel_size)
    """
    if config.resolution < 2:
        raise ConfigurationError(f"Grid resolution must be >= 2, got {config.resolution}")
    lo, hi = np.asarray(mesh_bounds[0], float), np.asarray(mesh_bounds[1], float)
    longest = float((hi - lo).max())
    if longest <= 0:
        raise ConfigurationError("Mesh has zero extent")
    voxel = longest / (config.resolution - 1)
    pad = config.padding_units * voxel
    lo = lo - pad
    counts = np.maximum(np.ceil((hi + pad - lo) / voxel - 1e-9).astype(int) + 1, 2)
    hi = lo + (counts - 1) * voxel
    return tuple(int(c) for c in counts), lo, hi, voxel


def generate_field(
    mesh: trimesh.Trimesh,
    config: Optional[GridConfig] = None,
) -> SignedDistanceField:
    """Sample and classify a signed-distance field around *mesh*."""
    if config is None:
        config = GridConfig()
    if len(mesh.faces) == 0:
        raise ValueError("Cannot build a field from an empty mesh")

    resolution, lo, hi, voxel = grid_layout(mesh.bounds, config)
    logger.info(
        "Grid layout: resolution=%s, voxel=%.4g, bounds=%s..%s",
        resolution, voxel, lo.round(4).tolist(), hi.round(4).tolist(),
    )
    query = MeshSurfaceQuery(mesh)
    sdf = SignedDistanceField.build(
        resolution, (lo, hi), query,
        target=config.target,
        classification=config.classification,
    )

    if config.freeze:
        kernel = config.kernel_distance
        if kernel is None:
            kernel = config.kernel_distance_units * voxel
        sdf.classify_and_freeze(query, kernel)
    else:
        sdf.classify_border_weights(query)
    return sdf


def full_domain_box(sdf: SignedDistanceField, color=(0, 0, 0)) -> Box3D:
    bounds = sdf.bounds
    return Box3D(bounds=bounds, color=color, target=sdf.target)


def seed_boxes(sdf: SignedDistanceField, min_vertices: int = 1) -> BoxCollection:
    """One box per connected region of guaranteed-interior vertices.

    Uses the committed kernel when there is one. Falls back to a single
    full-domain box if no region qualifies.
    """
    if sdf.kernel_mask is not None:
        interior = np.asarray(sdf.kernel_mask)
    else:
        interior = np.asarray(sdf.weights) == WeightLevel.GUARANTEED_INTERIOR.value

    labels, n_regions = label(interior)
    collection = BoxCollection()
    for region in range(1, n_regions + 1):
        idx = np.argwhere(labels == region)
        if len(idx) < min_vertices:
            continue
        color = _PALETTE[len(collection) % len(_PALETTE)]
        collection.add_box(Box3D.from_corners(
            sdf.grid_point(*idx.min(axis=0)),
            sdf.grid_point(*idx.max(axis=0)),
            color=color,
            target=sdf.target,
        ))

    if len(collection) == 0:
        logger.warning("No interior region to seed from; using the full domain box")
        collection.add_box(full_domain_box(sdf))
    logger.info("Seeded %d boxes from %d interior regions", len(collection), n_regions)
    return collection

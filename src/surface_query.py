"""
Signed-distance queries against an input surface.

The engine only ever asks a surface one question: the signed distance of a
batch of points, negative inside the solid. MeshSurfaceQuery answers it for a
trimesh mesh; FunctionSurfaceQuery wraps analytic distance functions.
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, Sequence

import numpy as np
import trimesh

logger = logging.getLogger(__name__)

_QUERY_BATCH = 100_000


class SurfaceQuery(ABC):
    """Signed-distance oracle for an input surface."""

    @abstractmethod
    def signed_distance(self, points: np.ndarray) -> np.ndarray:
        """Signed distance of (N, 3) points, negative inside. Returns (N,)."""
        ...


class MeshSurfaceQuery(SurfaceQuery):
    """Signed distance to a watertight trimesh mesh."""

    def __init__(self, mesh: trimesh.Trimesh):
        if len(mesh.faces) == 0:
            raise ValueError("Cannot query an empty mesh")
        if not mesh.is_watertight:
            logger.warning(
                "Mesh is not watertight (%d faces); inside/outside signs may be unreliable",
                len(mesh.faces),
            )
        self.mesh = mesh

    def signed_distance(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        out = np.empty(len(pts))
        for start in range(0, len(pts), _QUERY_BATCH):
            end = min(len(pts), start + _QUERY_BATCH)
            # trimesh reports positive distances inside the mesh.
            out[start:end] = -trimesh.proximity.signed_distance(self.mesh, pts[start:end])
        return out


class FunctionSurfaceQuery(SurfaceQuery):
    """Wrap a vectorized ``f(points) -> distances`` callable."""

    def __init__(self, fn: Callable[[np.ndarray], np.ndarray]):
        self.fn = fn

    def signed_distance(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return np.asarray(self.fn(pts), dtype=np.float64).reshape(len(pts))


def sphere_sdf(center: Sequence[float], radius: float) -> Callable[[np.ndarray], np.ndarray]:
    """Sphere SDF"""
    c = np.asarray(center, dtype=np.float64)

    def _sdf(p: np.ndarray) -> np.ndarray:
        return np.linalg.norm(p - c, axis=-1) - radius

    return _sdf


def box_sdf(min_corner: Sequence[float], max_corner: Sequence[float]) -> Callable[[np.ndarray], np.ndarray]:
    """Exact SDF of an axis-aligned box."""
    lo = np.asarray(min_corner, dtype=np.float64)
    hi = np.asarray(max_corner, dtype=np.float64)
    centre = (lo + hi) / 2.0
    half = (hi - lo) / 2.0

    def _sdf(p: np.ndarray) -> np.ndarray:
        q = np.abs(p - centre) - half
        outside = np.linalg.norm(np.maximum(q, 0.0), axis=-1)
        inside = np.minimum(q.max(axis=-1), 0.0)
        return outside + inside

    return _sdf

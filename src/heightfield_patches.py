"""
Ordered list of heightfield patches, each with a milling target direction.

A patch is a valid heightfield for its target when no face normal points
against the target. Faces whose normal makes n . target < FLIP_ANGLE are
"flipped"; faces pointing exactly opposite the target (the patch's own base)
are tolerated.
"""
import logging
from typing import BinaryIO, List, Sequence, Tuple

import numpy as np
import trimesh
from shapely.geometry import MultiPolygon, Polygon
from shapely.ops import unary_union

from binary_io import BinaryReader, BinaryWriter
from fitting_errors import SerializationError

logger = logging.getLogger(__name__)

FLIP_ANGLE = 0.0
EPSILON = 1e-6

_MAX_SERIALIZED_PATCHES = 1 << 20
_MAX_SERIALIZED_MESH_ELEMENTS = 1 << 28


def _checked(v: Sequence[float]) -> np.ndarray:
    v = np.asarray(v, dtype=np.float64).reshape(3)
    norm = float(np.linalg.norm(v))
    if not np.isfinite(norm) or norm < 1e-12:
        raise ValueError(f"Target direction must be non-zero, got {v.tolist()}")
    return v


def _unit(v: Sequence[float]) -> np.ndarray:
    v = _checked(v)
    return v / np.linalg.norm(v)


def _plane_axes(target: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Orthonormal (u, v) spanning the plane a patch is projected on.

    u is taken against the world axis least aligned with the target and
    (u, v, target) is right-handed.
    """
    t = _unit(target)
    ref = np.zeros(3)
    ref[int(np.argmin(np.abs(t)))] = 1.0
    u = _unit(np.cross(ref, t))
    return u, np.cross(t, u)


class HeightfieldPatchList:
    """Patches and their targets, kept index-aligned."""

    def __init__(self):
        self._patches: List[trimesh.Trimesh] = []
        self._targets: List[np.ndarray] = []

    def __len__(self) -> int:
        return len(self._patches)

    def add(self, mesh: trimesh.Trimesh, target: Sequence[float]):
        self._patches.append(mesh)
        self._targets.append(_unit(target))
        self._report_flips(len(self._patches) - 1)

    def insert(self, index: int, mesh: trimesh.Trimesh, target: Sequence[float]):
        if not 0 <= index <= len(self._patches):
            raise IndexError(f"Insert position {index} outside [0, {len(self._patches)}]")
        self._patches.insert(index, mesh)
        self._targets.insert(index, _unit(target))
        self._report_flips(index)

    def remove(self, index: int) -> Tuple[trimesh.Trimesh, np.ndarray]:
        return self._patches.pop(index), self._targets.pop(index)

    def get(self, index: int) -> trimesh.Trimesh:
        return self._patches[index]

    def set(self, index: int, mesh: trimesh.Trimesh):
        """Replace the mesh of patch *index*, keeping its target."""
        self._patches[index] = mesh
        self._report_flips(index)

    def target(self, index: int) -> np.ndarray:
        return self._targets[index].copy()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def flipped_faces(self, index: int) -> np.ndarray:
        """Indices of faces in patch *index* that point against its target."""
        dots = np.asarray(self._patches[index].face_normals) @ self._targets[index]
        return np.nonzero((dots < FLIP_ANGLE - EPSILON) & (dots > -1.0 + EPSILON))[0]

    def _report_flips(self, index: int):
        flipped = self.flipped_faces(index)
        if len(flipped):
            logger.debug("Patch %d has %d flipped faces", index, len(flipped))

    def check(self) -> bool:
        """Log every flipped face; True when all patches are valid heightfields."""
        ok = True
        for i, mesh in enumerate(self._patches):
            flipped = self.flipped_faces(i)
            if not len(flipped):
                continue
            ok = False
            dots = np.asarray(mesh.face_normals[flipped]) @ self._targets[i]
            for f, d in zip(flipped, dots):
                logger.warning("Heightfield %d: triangle %d flipped (n.t = %.4f)", i, f, d)
        return ok

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def rotate(self, matrix: np.ndarray):
        """Apply a 3x3 rotation to every patch and target."""
        matrix = np.asarray(matrix, dtype=np.float64).reshape(3, 3)
        transform = np.eye(4)
        transform[:3, :3] = matrix
        for i, mesh in enumerate(self._patches):
            mesh.apply_transform(transform)
            self._targets[i] = _unit(matrix @ self._targets[i])

    def explode(self, center: Sequence[float], distance: float):
        """Push every patch *distance* away from *center*, along center -> barycentre."""
        center = np.asarray(center, dtype=np.float64).reshape(3)
        for mesh in self._patches:
            direction = np.asarray(mesh.vertices).mean(axis=0) - center
            norm = float(np.linalg.norm(direction))
            if norm < 1e-12:
                continue
            mesh.apply_translation(direction / norm * distance)

    def footprint(self, index: int):
        """Area covered by patch *index* seen along its target.

        Returns the shapely union of the patch triangles projected on the
        plane orthogonal to the target, in that plane's (u, v) coordinates.
        """
        mesh = self._patches[index]
        u_axis, v_axis = _plane_axes(self._targets[index])
        triangles = np.asarray(mesh.triangles)
        uv = np.stack([triangles @ u_axis, triangles @ v_axis], axis=-1)

        polygons = []
        for tri in uv:
            p = Polygon(tri)
            if p.is_valid and p.area > 0:
                polygons.append(p)
        if not polygons:
            return Polygon()
        merged = unary_union(polygons)
        if isinstance(merged, MultiPolygon):
            logger.debug("Patch %d footprint has %d parts", index, len(merged.geoms))
        return merged

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def write(self, stream: BinaryIO):
        writer = BinaryWriter(stream)
        writer.write_u32(len(self._patches))
        for mesh, target in zip(self._patches, self._targets):
            vertices = np.asarray(mesh.vertices, dtype=np.float64)
            faces = np.asarray(mesh.faces, dtype=np.int64)
            writer.write_u64(len(vertices))
            writer.write_f64_array(vertices)
            writer.write_u64(len(faces))
            writer.write_i64_array(faces)
            writer.write_vec3(target)

    @classmethod
    def read(cls, stream: BinaryIO) -> "HeightfieldPatchList":
        reader = BinaryReader(stream)
        count = reader.read_u32()
        if count > _MAX_SERIALIZED_PATCHES:
            raise SerializationError(f"Implausible patch count {count}")
        patches = cls()
        for _ in range(count):
            n_vertices = reader.read_u64()
            if n_vertices > _MAX_SERIALIZED_MESH_ELEMENTS:
                raise SerializationError(f"Implausible vertex count {n_vertices}")
            vertices = reader.read_f64_array((n_vertices, 3))
            n_faces = reader.read_u64()
            if n_faces > _MAX_SERIALIZED_MESH_ELEMENTS:
                raise SerializationError(f"Implausible face count {n_faces}")
            faces = reader.read_i64_array((n_faces, 3))
            if n_faces and (faces.min() < 0 or faces.max() >= n_vertices):
                raise SerializationError("Patch face indices out of range")
            try:
                target = _checked(reader.read_vec3())
            except ValueError as e:
                raise SerializationError(str(e)) from e
            patches._patches.append(
                trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
            )
            patches._targets.append(target)
        return patches

    def deserialize(self, stream: BinaryIO) -> bool:
        """Replace the patches with those in *stream*; untouched on failure."""
        try:
            loaded = HeightfieldPatchList.read(stream)
        except SerializationError as e:
            logger.warning("Heightfield deserialization failed: %s", e)
            return False
        self._patches = loaded._patches
        self._targets = loaded._targets
        return True

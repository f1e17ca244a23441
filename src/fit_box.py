"""
Axis-aligned fitting box.

A Box3D is the unit the optimizer works on: six numbers (min and max corner)
plus some attributes carried for the editing and display layers. The anchor
points and the rotation never enter the energy; rotation is applied only when
building the renderable mesh.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import BinaryIO, Optional, Sequence, Tuple

import numpy as np
import trimesh

from binary_io import BinaryReader, BinaryWriter
from bounding_volume import BoundingVolume
from fitting_errors import SerializationError

logger = logging.getLogger(__name__)

# Upper bound on serialized display meshes, against corrupt counts.
_MAX_SERIALIZED_MESH_ELEMENTS = 1 << 28


@dataclass
class Box3D:
    """An axis-aligned box being fitted to the solid."""
    bounds: BoundingVolume
    anchors: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))  # 3 editing points
    color: Tuple[int, int, int] = (0, 0, 0)
    target: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))        # display only
    mesh: Optional[trimesh.Trimesh] = None                                 # cached display mesh

    def __post_init__(self):
        self.anchors = np.array(self.anchors, dtype=np.float64).reshape(3, 3)
        self.target = np.array(self.target, dtype=np.float64).reshape(3)
        self.rotation = np.array(self.rotation, dtype=np.float64).reshape(3, 3)
        self.color = tuple(int(c) for c in self.color)
        if len(self.color) != 3 or any(c < 0 or c > 255 for c in self.color):
            raise ValueError(f"Colour must be 3 values in [0, 255], got {self.color}")

    @classmethod
    def from_corners(
        cls,
        min_corner: Sequence[float],
        max_corner: Sequence[float],
        **kwargs,
    ) -> "Box3D":
        return cls(BoundingVolume(min_corner, max_corner), **kwargs)

    # --- geometry ---------------------------------------------------------

    @property
    def min_corner(self) -> np.ndarray:
        return self.bounds.min_corner.copy()

    @property
    def max_corner(self) -> np.ndarray:
        return self.bounds.max_corner.copy()

    @property
    def extents(self) -> np.ndarray:
        return self.bounds.lengths

    @property
    def volume(self) -> float:
        return self.bounds.volume

    @property
    def center(self) -> np.ndarray:
        return self.bounds.center

    def set_corners(self, min_corner: Sequence[float], max_corner: Sequence[float]):
        """Replace both corners; raises ValueError if min > max on any axis."""
        self.bounds = BoundingVolume(min_corner, max_corner)

    def as_vector(self) -> np.ndarray:
        """(minX, minY, minZ, maxX, maxY, maxZ)."""
        return np.concatenate([self.bounds.min_corner, self.bounds.max_corner])

    def set_vector(self, x: Sequence[float]):
        x = np.asarray(x, dtype=np.float64).reshape(6)
        self.set_corners(x[:3], x[3:])

    def contains_point(self, point: Sequence[float]) -> bool:
        return self.bounds.contains(np.asarray(point, dtype=np.float64))

    def move(self, delta: Sequence[float]):
        """Translate the box (anchors are left where they are)."""
        d = np.asarray(delta, dtype=np.float64).reshape(3)
        self.set_corners(self.bounds.min_corner + d, self.bounds.max_corner + d)

    def _set_length(self, axis: int, length: float):
        if length < 0:
            raise ValueError(f"Box edge length must be >= 0, got {length}")
        hi = self.bounds.max_corner.copy()
        hi[axis] = self.bounds.min_corner[axis] + length
        self.set_corners(self.bounds.min_corner, hi)

    def set_width(self, length: float):
        self._set_length(0, length)

    def set_height(self, length: float):
        self._set_length(1, length)

    def set_depth(self, length: float):
        self._set_length(2, length)

    def set_anchor(self, index: int, point: Sequence[float]):
        self.anchors[index] = np.asarray(point, dtype=np.float64).reshape(3)

    # --- display ----------------------------------------------------------

    def rotated_extremes(self) -> np.ndarray:
        """The 8 corners with the display rotation applied, shape (8, 3)."""
        return self.bounds.corners() @ self.rotation.T

    def rotated_target(self) -> np.ndarray:
        r = self.rotation @ self.target
        norm = np.linalg.norm(r)
        return r / norm if norm > 0 else r

    def calculate_mesh(self, minimum_edge: float = 0.0) -> trimesh.Trimesh:
        """Triangulated box surface, rotated for display.

        With ``minimum_edge > 0`` the faces are subdivided until no edge is
        longer than *minimum_edge*.
        """
        box = trimesh.creation.box(bounds=np.stack([self.bounds.min_corner, self.bounds.max_corner]))
        vertices, faces = box.vertices, box.faces
        longest = float(self.extents.max())
        if minimum_edge > 0 and longest > minimum_edge and not self.bounds.is_degenerate():
            max_iter = int(math.ceil(math.log2(longest / minimum_edge))) + 2
            vertices, faces = trimesh.remesh.subdivide_to_size(
                vertices, faces, max_edge=minimum_edge, max_iter=max_iter,
            )
        vertices = np.asarray(vertices) @ self.rotation.T
        return trimesh.Trimesh(vertices=vertices, faces=faces, process=False)

    def generate_piece(self, minimum_edge: float = 0.0):
        """Compute and cache the display mesh."""
        self.mesh = self.calculate_mesh(minimum_edge)

    def copy(self) -> "Box3D":
        return Box3D(
            bounds=self.bounds.copy(),
            anchors=self.anchors.copy(),
            color=self.color,
            target=self.target.copy(),
            rotation=self.rotation.copy(),
            mesh=self.mesh.copy() if self.mesh is not None else None,
        )

    # --- persistence ------------------------------------------------------

    def write(self, stream: BinaryIO):
        writer = BinaryWriter(stream)
        self.bounds.write(stream)
        writer.write_f64_array(self.anchors)
        for c in self.color:
            writer.write_u8(c)
        writer.write_vec3(self.target)
        writer.write_f64_array(self.rotation)
        writer.write_bool(self.mesh is not None)
        if self.mesh is not None:
            vertices = np.asarray(self.mesh.vertices, dtype=np.float64)
            faces = np.asarray(self.mesh.faces, dtype=np.int64)
            writer.write_u64(len(vertices))
            writer.write_f64_array(vertices)
            writer.write_u64(len(faces))
            writer.write_i64_array(faces)

    @classmethod
    def read(cls, stream: BinaryIO) -> "Box3D":
        """Read a box written by ``write``; raises SerializationError."""
        reader = BinaryReader(stream)
        bounds = BoundingVolume.read(stream)
        anchors = reader.read_f64_array((3, 3))
        color = tuple(reader.read_u8() for _ in range(3))
        target = reader.read_vec3()
        rotation = reader.read_f64_array((3, 3))
        mesh = None
        if reader.read_bool():
            n_vertices = reader.read_u64()
            if n_vertices > _MAX_SERIALIZED_MESH_ELEMENTS:
                raise SerializationError(f"Implausible vertex count {n_vertices}")
            vertices = reader.read_f64_array((n_vertices, 3))
            n_faces = reader.read_u64()
            if n_faces > _MAX_SERIALIZED_MESH_ELEMENTS:
                raise SerializationError(f"Implausible face count {n_faces}")
            faces = reader.read_i64_array((n_faces, 3))
            if n_faces and (faces.min() < 0 or faces.max() >= n_vertices):
                raise SerializationError("Display mesh face indices out of range")
            mesh = trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
        return cls(
            bounds=bounds,
            anchors=anchors,
            color=color,
            target=target,
            rotation=rotation,
            mesh=mesh,
        )

    def deserialize(self, stream: BinaryIO) -> bool:
        """Replace this box with the one in *stream*; untouched on failure."""
        try:
            loaded = Box3D.read(stream)
        except SerializationError as e:
            logger.warning("Box deserialization failed: %s", e)
            return False
        vars(self).clear()
        vars(self).update(vars(loaded))
        return True

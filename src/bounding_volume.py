"""
Axis-aligned bounding volume shared by the field and the fitting boxes.

Both SignedDistanceField and Box3D embed a BoundingVolume by value instead of
deriving from it.
"""
from dataclasses import dataclass
from typing import BinaryIO, Tuple

import numpy as np

from binary_io import BinaryReader, BinaryWriter
from fitting_errors import SerializationError


@dataclass
class BoundingVolume:
    """Closed axis-aligned box ``[min_corner, max_corner]``."""
    min_corner: np.ndarray      # (3,)
    max_corner: np.ndarray      # (3,)

    def __post_init__(self):
        self.min_corner = np.array(self.min_corner, dtype=np.float64).reshape(3)
        self.max_corner = np.array(self.max_corner, dtype=np.float64).reshape(3)
        if np.any(self.min_corner > self.max_corner):
            raise ValueError(
                f"Bounding volume min {self.min_corner.tolist()} exceeds "
                f"max {self.max_corner.tolist()}"
            )

    @property
    def lengths(self) -> np.ndarray:
        return self.max_corner - self.min_corner

    @property
    def center(self) -> np.ndarray:
        return (self.min_corner + self.max_corner) / 2.0

    @property
    def volume(self) -> float:
        return float(np.prod(self.lengths))

    def is_degenerate(self) -> bool:
        return bool(np.any(self.lengths <= 0.0))

    def contains(self, point: np.ndarray) -> bool:
        p = np.asarray(point, dtype=np.float64)
        return bool(np.all(p >= self.min_corner) and np.all(p <= self.max_corner))

    def is_strictly_inside(self, point: np.ndarray) -> bool:
        p = np.asarray(point, dtype=np.float64)
        return bool(np.all(p > self.min_corner) and np.all(p < self.max_corner))

    def contains_volume(self, other: "BoundingVolume") -> bool:
        return bool(
            np.all(other.min_corner >= self.min_corner)
            and np.all(other.max_corner <= self.max_corner)
        )

    def corners(self) -> np.ndarray:
        """The 8 corners, ordered like the display mesh vertices.

        Returns:
            (8, 3) array.
        """
        lo, hi = self.min_corner, self.max_corner
        return np.array([
            [lo[0], lo[1], lo[2]],
            [hi[0], lo[1], lo[2]],
            [hi[0], lo[1], hi[2]],
            [lo[0], lo[1], hi[2]],
            [lo[0], hi[1], lo[2]],
            [hi[0], hi[1], lo[2]],
            [hi[0], hi[1], hi[2]],
            [lo[0], hi[1], hi[2]],
        ])

    def as_tuple(self) -> Tuple[float, ...]:
        return tuple(self.min_corner.tolist() + self.max_corner.tolist())

    def copy(self) -> "BoundingVolume":
        return BoundingVolume(self.min_corner.copy(), self.max_corner.copy())

    def write(self, stream: BinaryIO):
        writer = BinaryWriter(stream)
        writer.write_vec3(self.min_corner)
        writer.write_vec3(self.max_corner)

    @classmethod
    def read(cls, stream: BinaryIO) -> "BoundingVolume":
        reader = BinaryReader(stream)
        lo = reader.read_vec3()
        hi = reader.read_vec3()
        try:
            return cls(lo, hi)
        except ValueError as e:
            raise SerializationError(f"Corrupt bounding volume: {e}") from e

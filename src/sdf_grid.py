"""
Voxel signed-distance field with classification weights.

The field stores, on a regular grid of vertices spanning a bounding volume:
  - the signed distance to the input surface (negative inside the solid),
  - a weight per vertex, one of the WeightLevel values,
  - a sparse, lazily filled table of tricubic coefficient blocks for the
    cells the energy actually touches.

Lifecycle is one way: UNCLASSIFIED -> CLASSIFIED -> FROZEN. Weights can be
edited or reclassified until the field is frozen; after that the field is
read-only and may be shared by any number of concurrent energy evaluations.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Dict, Optional, Sequence, Tuple, Union

import numpy as np

import tricubic
from binary_io import BinaryReader, BinaryWriter
from bounding_volume import BoundingVolume
from fitting_errors import ConfigurationError, SerializationError, StateError
from surface_query import SurfaceQuery

logger = logging.getLogger(__name__)

BORDER_PAY = 5.0
STD_PAY = 0.0
MIN_PAY = -10.0
MAX_PAY = 500.0

# Refuse to allocate absurd grids when reading corrupt streams.
_MAX_SERIALIZED_VERTICES = 1 << 31


class WeightLevel(Enum):
    """Classification level of a grid vertex and its energy weight."""
    BORDER = BORDER_PAY
    STANDARD = STD_PAY
    GUARANTEED_INTERIOR = MIN_PAY
    GUARANTEED_EXTERIOR = MAX_PAY


_LEVEL_VALUES = np.array([level.value for level in WeightLevel])


class FieldState(Enum):
    UNCLASSIFIED = 0
    CLASSIFIED = 1
    FROZEN = 2


@dataclass
class ClassificationConfig:
    """Thresholds for vertex classification, in voxel units."""
    border_tolerance_units: float = 1.0
    interior_depth_units: float = 2.0
    exterior_guard_units: float = 2.0


ZERO_COEFFICIENTS = np.zeros((4, 4, 4))
ZERO_COEFFICIENTS.setflags(write=False)

BoundsLike = Union[BoundingVolume, Tuple[Sequence[float], Sequence[float]]]


def _read_only_view(arr: np.ndarray) -> np.ndarray:
    view = arr.view()
    view.setflags(write=False)
    return view


class SignedDistanceField:
    """Regular grid of signed distances and weights over a bounding volume."""

    def __init__(
        self,
        resolution: Sequence[int],
        bounds: BoundsLike,
        distances: Optional[np.ndarray] = None,
        weights: Optional[np.ndarray] = None,
        target: Optional[Sequence[float]] = None,
        classification: Optional[ClassificationConfig] = None,
    ):
        self._resolution = _validate_resolution(resolution)
        self._bounds = _validate_bounds(bounds)
        shape = self._resolution

        if distances is None:
            distances = np.zeros(shape)
        distances = np.array(distances, dtype=np.float64)
        if distances.shape != shape:
            raise ConfigurationError(
                f"Signed-distance array has shape {distances.shape}, expected {shape}"
            )

        if weights is None:
            weights = np.full(shape, WeightLevel.STANDARD.value)
        weights = np.array(weights, dtype=np.float64)
        if weights.shape != shape:
            raise ConfigurationError(
                f"Weight array has shape {weights.shape}, expected {shape}"
            )
        _check_weight_levels(weights)

        self._distances = distances
        self._weights = weights
        self._target = _normalize_target(target)
        self.classification = classification or ClassificationConfig()
        self._state = FieldState.UNCLASSIFIED
        self._kernel_mask: Optional[np.ndarray] = None
        self._coefficients: Dict[int, np.ndarray] = {}
        self._corner_data: Optional[np.ndarray] = None
        self._full_box_values: Optional[np.ndarray] = None

    @classmethod
    def build(
        cls,
        resolution: Sequence[int],
        bounds: BoundsLike,
        surface: SurfaceQuery,
        target: Optional[Sequence[float]] = None,
        classification: Optional[ClassificationConfig] = None,
    ) -> "SignedDistanceField":
        """Allocate a field and sample the surface's signed distance at every vertex."""
        field = cls(resolution, bounds, target=target, classification=classification)
        points = field.grid_points().reshape(-1, 3)
        distances = np.asarray(surface.signed_distance(points), dtype=np.float64)
        if distances.shape != (len(points),):
            raise ConfigurationError(
                f"Surface query returned shape {distances.shape} for {len(points)} points"
            )
        if not np.all(np.isfinite(distances)):
            raise ConfigurationError("Surface query returned non-finite distances")
        field._distances = distances.reshape(field.shape)
        logger.info(
            "Sampled signed distance: shape=%s, range=[%.4g, %.4g]",
            field.shape, float(distances.min()), float(distances.max()),
        )
        return field

    # ------------------------------------------------------------------
    # Geometry accessors
    # ------------------------------------------------------------------

    @property
    def resolution(self) -> Tuple[int, int, int]:
        return self._resolution

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self._resolution

    @property
    def res_x(self) -> int:
        return self._resolution[0]

    @property
    def res_y(self) -> int:
        return self._resolution[1]

    @property
    def res_z(self) -> int:
        return self._resolution[2]

    @property
    def cell_shape(self) -> Tuple[int, int, int]:
        return tuple(n - 1 for n in self._resolution)

    @property
    def bounds(self) -> BoundingVolume:
        return self._bounds.copy()

    @property
    def spacing(self) -> np.ndarray:
        """Voxel edge length along each axis."""
        return self._bounds.lengths / (np.array(self._resolution) - 1)

    @property
    def unit(self) -> float:
        """Voxel edge length along X."""
        return float(self.spacing[0])

    @property
    def cell_volume(self) -> float:
        return float(np.prod(self.spacing))

    @property
    def target(self) -> np.ndarray:
        return self._target.copy()

    @target.setter
    def target(self, value: Sequence[float]):
        self._target = _normalize_target(value)

    @property
    def state(self) -> FieldState:
        return self._state

    @property
    def is_frozen(self) -> bool:
        return self._state is FieldState.FROZEN

    @property
    def distances(self) -> np.ndarray:
        return _read_only_view(self._distances)

    @property
    def weights(self) -> np.ndarray:
        return _read_only_view(self._weights)

    @property
    def kernel_mask(self) -> Optional[np.ndarray]:
        if self._kernel_mask is None:
            return None
        return _read_only_view(self._kernel_mask)

    def grid_point(self, i: int, j: int, k: int) -> np.ndarray:
        return self._bounds.min_corner + self.spacing * np.array([i, j, k], dtype=np.float64)

    def grid_points(self) -> np.ndarray:
        """World coordinates of every vertex, shape (nx, ny, nz, 3)."""
        axes = [
            np.linspace(self._bounds.min_corner[a], self._bounds.max_corner[a], n)
            for a, n in enumerate(self._resolution)
        ]
        gx, gy, gz = np.meshgrid(*axes, indexing="ij")
        return np.stack([gx, gy, gz], axis=-1)

    def cell_centers(self) -> np.ndarray:
        """World coordinates of every cell centre, shape (nx-1, ny-1, nz-1, 3)."""
        return self.grid_points()[:-1, :-1, :-1] + self.spacing / 2.0

    def to_grid_coordinates(self, point: np.ndarray) -> np.ndarray:
        """Continuous index-space coordinates of a world point."""
        return (np.asarray(point, dtype=np.float64) - self._bounds.min_corner) / self.spacing

    def index_of(self, point: np.ndarray) -> Tuple[int, int, int]:
        """Vertex index at or below *point* on each axis (may fall outside the grid)."""
        g = np.floor(self.to_grid_coordinates(point)).astype(int)
        return int(g[0]), int(g[1]), int(g[2])

    def nearest_grid_point(self, point: np.ndarray) -> np.ndarray:
        g = np.rint(self.to_grid_coordinates(point)).astype(int)
        g = np.clip(g, 0, np.array(self._resolution) - 1)
        return self.grid_point(*g)

    def signed_distance_at(self, i: int, j: int, k: int) -> float:
        return float(self._distances[i, j, k])

    def weight_at(self, i: int, j: int, k: int) -> float:
        return float(self._weights[i, j, k])

    def weight_range(self) -> Tuple[float, float]:
        return float(self._weights.min()), float(self._weights.max())

    def flat_cell_index(self, i: int, j: int, k: int) -> int:
        return int(np.ravel_multi_index((i, j, k), self.cell_shape))

    # ------------------------------------------------------------------
    # Weight editing and classification
    # ------------------------------------------------------------------

    def _require_mutable(self):
        if self._state is FieldState.FROZEN:
            raise StateError("Field weights are frozen and can no longer change")

    def _require_frozen(self):
        if self._state is not FieldState.FROZEN:
            raise StateError(
                f"Field must be frozen before interpolation (state: {self._state.name})"
            )

    def set_vertex_weight(self, i: int, j: int, k: int, level: WeightLevel):
        self._require_mutable()
        self._weights[i, j, k] = WeightLevel(level).value
        self._state = FieldState.CLASSIFIED

    def set_weight_on_cell(self, i: int, j: int, k: int, level: WeightLevel):
        """Assign *level* to the 8 corners of cell (i, j, k)."""
        self._require_mutable()
        nx, ny, nz = self.cell_shape
        if not (0 <= i < nx and 0 <= j < ny and 0 <= k < nz):
            raise IndexError(f"Cell ({i}, {j}, {k}) outside grid of {self.cell_shape} cells")
        self._weights[i:i + 2, j:j + 2, k:k + 2] = WeightLevel(level).value
        self._state = FieldState.CLASSIFIED

    def set_weights(self, weights: np.ndarray):
        self._require_mutable()
        weights = np.array(weights, dtype=np.float64)
        if weights.shape != self.shape:
            raise ConfigurationError(
                f"Weight array has shape {weights.shape}, expected {self.shape}"
            )
        _check_weight_levels(weights)
        self._weights = weights
        self._state = FieldState.CLASSIFIED

    def _resolve_tolerance(self, tolerance: Optional[float]) -> float:
        if tolerance is None:
            return self.classification.border_tolerance_units * self.unit
        tolerance = float(tolerance)
        if tolerance < 0.0:
            raise ConfigurationError(f"Border tolerance must be >= 0, got {tolerance}")
        return tolerance

    def _border_mask(self, surface: SurfaceQuery, tolerance: float) -> np.ndarray:
        """Vertices near the surface, plus the corners of cells it crosses."""
        border = np.abs(self._distances) <= tolerance

        centres = self.cell_centers().reshape(-1, 3)
        centre_distances = np.asarray(surface.signed_distance(centres), dtype=np.float64)
        near_cells = (np.abs(centre_distances) <= tolerance).reshape(self.cell_shape)

        nx, ny, nz = self.cell_shape
        for dx, dy, dz in tricubic.CORNER_OFFSETS:
            border[dx:dx + nx, dy:dy + ny, dz:dz + nz] |= near_cells
        return border

    def _classify(
        self,
        surface: SurfaceQuery,
        tolerance: float,
        interior: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        exterior_guard = self.classification.exterior_guard_units * self.unit
        border = self._border_mask(surface, tolerance)

        weights = np.full(self.shape, WeightLevel.STANDARD.value)
        weights[self._distances > exterior_guard] = WeightLevel.GUARANTEED_EXTERIOR.value
        interior = interior & ~border
        weights[interior] = WeightLevel.GUARANTEED_INTERIOR.value
        weights[border] = WeightLevel.BORDER.value
        return weights, interior

    def _log_classification(self, label: str):
        counts = {
            level.name: int(np.count_nonzero(self._weights == level.value))
            for level in WeightLevel
        }
        logger.info("%s: %s", label, counts)

    def classify_border_weights(
        self,
        surface: SurfaceQuery,
        tolerance: Optional[float] = None,
    ):
        """Label every vertex relative to *surface*.

        BORDER within *tolerance* of the surface (default one voxel),
        GUARANTEED_INTERIOR deeper than the interior depth, GUARANTEED_EXTERIOR
        beyond the exterior guard band, STANDARD otherwise. Re-running with
        identical inputs reproduces identical weights.
        """
        self._require_mutable()
        tol = self._resolve_tolerance(tolerance)
        depth = self.classification.interior_depth_units * self.unit
        weights, _ = self._classify(surface, tol, self._distances < -depth)
        self._weights = weights
        self._state = FieldState.CLASSIFIED
        self._log_classification("Border weights")

    def classify_and_freeze(
        self,
        surface: SurfaceQuery,
        guard_distance: float,
        tolerance: Optional[float] = None,
    ):
        """Classify, commit the kernel and freeze the field.

        The kernel is every non-border vertex at depth >= *guard_distance*
        inside the solid; it becomes the only GUARANTEED_INTERIOR region.
        """
        self._require_mutable()
        guard_distance = float(guard_distance)
        if not np.isfinite(guard_distance) or guard_distance < 0.0:
            raise ConfigurationError(
                f"Kernel guard distance must be a finite value >= 0, got {guard_distance}"
            )
        tol = self._resolve_tolerance(tolerance)
        weights, kernel = self._classify(
            surface, tol, self._distances <= -guard_distance,
        )
        self._weights = weights
        self._kernel_mask = kernel
        self._state = FieldState.CLASSIFIED
        self._log_classification("Kernel weights")
        logger.info(
            "Kernel committed: %d vertices at depth >= %.4g",
            int(kernel.sum()), guard_distance,
        )
        self.freeze()

    def kernel_bounds(self) -> Optional[BoundingVolume]:
        """Bounding volume of the committed kernel vertices, if any."""
        if self._kernel_mask is None or not self._kernel_mask.any():
            return None
        idx = np.argwhere(self._kernel_mask)
        return BoundingVolume(
            self.grid_point(*idx.min(axis=0)),
            self.grid_point(*idx.max(axis=0)),
        )

    def freeze(self):
        """Make the weights immutable and prepare the interpolation data."""
        self._require_mutable()
        self._prepare_interpolation()
        self._state = FieldState.FROZEN
        low, high = self.weight_range()
        logger.info(
            "Field frozen: %s vertices, weights in [%.4g, %.4g]",
            self.shape, low, high,
        )

    def _prepare_interpolation(self):
        self._weights.setflags(write=False)
        self._distances.setflags(write=False)
        if self._kernel_mask is not None:
            self._kernel_mask.setflags(write=False)
        self._corner_data = tricubic.corner_data(self._weights)
        self._full_box_values = (
            tricubic.full_cell_integrals(self._corner_data) * self.cell_volume
        )

    # ------------------------------------------------------------------
    # Tricubic interpolation
    # ------------------------------------------------------------------

    @property
    def coefficient_count(self) -> int:
        """Number of cells whose coefficient block has been derived."""
        return len(self._coefficients)

    def has_coefficients(self, i: int, j: int, k: int) -> bool:
        return self.flat_cell_index(i, j, k) in self._coefficients

    def cell_coefficients(self, i: int, j: int, k: int) -> np.ndarray:
        """Coefficient block (4, 4, 4) of cell (i, j, k), derived on first use."""
        self._require_frozen()
        flat = self.flat_cell_index(i, j, k)
        block = self._coefficients.get(flat)
        if block is None:
            block = tricubic.cell_coefficients(self._corner_data, i, j, k)
            block.setflags(write=False)
            # Concurrent first touches compute identical blocks.
            block = self._coefficients.setdefault(flat, block)
        return block

    def full_box_value(self, i: int, j: int, k: int) -> float:
        """Integral of the interpolated weights over the whole cell (i, j, k)."""
        self._require_frozen()
        return float(self._full_box_values[i, j, k])

    @property
    def full_box_values(self) -> np.ndarray:
        self._require_frozen()
        return _read_only_view(self._full_box_values)

    def _locate(self, point: np.ndarray) -> Tuple[Tuple[int, int, int], np.ndarray]:
        g = self.to_grid_coordinates(point)
        cell = np.clip(np.floor(g).astype(int), 0, np.array(self.cell_shape) - 1)
        return (int(cell[0]), int(cell[1]), int(cell[2])), g - cell

    def query_coefficients(self, point: np.ndarray) -> np.ndarray:
        """Coefficient block of the cell containing *point*.

        Points not strictly inside the bounding volume get ZERO_COEFFICIENTS.
        """
        if not self._bounds.is_strictly_inside(point):
            return ZERO_COEFFICIENTS
        cell, _ = self._locate(point)
        return self.cell_coefficients(*cell)

    def value(self, point: np.ndarray) -> float:
        """Interpolated weight at *point*; 0 outside the domain."""
        if not self._bounds.is_strictly_inside(point):
            return 0.0
        cell, local = self._locate(point)
        return tricubic.evaluate(self.cell_coefficients(*cell), *local)

    def gradient_at(self, point: np.ndarray) -> np.ndarray:
        """Gradient of the interpolated weight in world units; 0 outside."""
        if not self._bounds.is_strictly_inside(point):
            return np.zeros(3)
        cell, local = self._locate(point)
        local_grad = tricubic.evaluate_gradient(self.cell_coefficients(*cell), *local)
        return local_grad / self.spacing

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def write(self, stream: BinaryIO):
        writer = BinaryWriter(stream)
        for n in self._resolution:
            writer.write_u32(n)
        self._bounds.write(stream)
        writer.write_f64_array(self._distances)
        writer.write_f64_array(self._weights)
        writer.write_u32(len(self._coefficients))
        for flat in sorted(self._coefficients):
            writer.write_u32(flat)
            writer.write_f64_array(self._coefficients[flat])
        writer.write_vec3(self._target)
        writer.write_u8(self._state.value)
        writer.write_bool(self._kernel_mask is not None)
        if self._kernel_mask is not None:
            writer.write_f64_array(self._kernel_mask.astype(np.float64))

    @classmethod
    def read(cls, stream: BinaryIO) -> "SignedDistanceField":
        """Read a field written by ``write``; raises SerializationError."""
        reader = BinaryReader(stream)
        resolution = tuple(reader.read_u32() for _ in range(3))
        if np.prod(resolution, dtype=np.int64) > _MAX_SERIALIZED_VERTICES:
            raise SerializationError(f"Implausible grid resolution {resolution}")
        bounds = BoundingVolume.read(stream)
        distances = reader.read_f64_array(resolution)
        weights = reader.read_f64_array(resolution)
        try:
            field = cls(resolution, bounds, distances=distances, weights=weights)
        except ConfigurationError as e:
            raise SerializationError(f"Corrupt field header: {e}") from e

        n_cells = int(np.prod(field.cell_shape))
        count = reader.read_u32()
        if count > n_cells:
            raise SerializationError(
                f"Coefficient table has {count} entries for {n_cells} cells"
            )
        coefficients: Dict[int, np.ndarray] = {}
        for _ in range(count):
            flat = reader.read_u32()
            if flat >= n_cells:
                raise SerializationError(f"Coefficient cell index {flat} out of range")
            block = reader.read_f64_array((4, 4, 4))
            block.setflags(write=False)
            coefficients[flat] = block

        target = reader.read_vec3()
        state_raw = reader.read_u8()
        try:
            state = FieldState(state_raw)
            field._target = _validate_target(target)
        except (ValueError, ConfigurationError) as e:
            raise SerializationError(f"Corrupt field trailer: {e}") from e

        if reader.read_bool():
            mask = reader.read_f64_array(resolution)
            field._kernel_mask = mask != 0.0

        field._coefficients = coefficients
        field._state = state
        if state is FieldState.FROZEN:
            field._prepare_interpolation()
        return field

    def deserialize(self, stream: BinaryIO) -> bool:
        """Replace this field with the one in *stream*.

        The object is left untouched if the stream is truncated or corrupt.
        """
        try:
            loaded = SignedDistanceField.read(stream)
        except SerializationError as e:
            logger.warning("Field deserialization failed: %s", e)
            return False
        vars(self).clear()
        vars(self).update(vars(loaded))
        return True


def _validate_resolution(resolution: Sequence[int]) -> Tuple[int, int, int]:
    try:
        values = [r for r in resolution]
    except TypeError:
        raise ConfigurationError(f"Resolution must be a sequence of 3 integers, got {resolution!r}")
    if len(values) != 3:
        raise ConfigurationError(f"Resolution must have 3 entries, got {len(values)}")
    out = []
    for r in values:
        if isinstance(r, bool) or int(r) != r:
            raise ConfigurationError(f"Resolution entries must be integers, got {r!r}")
        if int(r) < 2:
            raise ConfigurationError(f"Resolution must be >= 2 on every axis, got {values}")
        out.append(int(r))
    return tuple(out)


def _validate_bounds(bounds: BoundsLike) -> BoundingVolume:
    if isinstance(bounds, BoundingVolume):
        bv = bounds.copy()
    else:
        try:
            lo, hi = bounds
            bv = BoundingVolume(lo, hi)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid bounding volume: {e}") from e
    if not np.all(np.isfinite(bv.min_corner)) or not np.all(np.isfinite(bv.max_corner)):
        raise ConfigurationError("Bounding volume must be finite")
    if bv.is_degenerate():
        raise ConfigurationError(
            f"Degenerate bounding volume: lengths {bv.lengths.tolist()}"
        )
    return bv


def _normalize_target(target: Optional[Sequence[float]]) -> np.ndarray:
    if target is None:
        return np.array([0.0, 0.0, 1.0])
    t = np.array(target, dtype=np.float64).reshape(3)
    return _validate_target(t) / np.linalg.norm(t)


def _validate_target(t: np.ndarray) -> np.ndarray:
    """Check a direction without rescaling it; stored targets reload as written."""
    norm = float(np.linalg.norm(t))
    if not np.isfinite(norm) or norm < 1e-12:
        raise ConfigurationError(f"Target direction must be a non-zero vector, got {t.tolist()}")
    return t


def _check_weight_levels(weights: np.ndarray):
    if not np.all(np.isin(weights, _LEVEL_VALUES)):
        bad = np.unique(weights[~np.isin(weights, _LEVEL_VALUES)])[:5]
        raise ConfigurationError(f"Weights must be WeightLevel values, found {bad.tolist()}")

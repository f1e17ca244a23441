"""
Energy of an axis-aligned box over a frozen signed-distance field.

    E(box) = integral over the box of the interpolated weight field
             + volume_cost * volume(box)
             + sum over axes of barrier_weight * (min_edge - L)^3   (L < min_edge)

The weight field is the tricubic interpolant of the classification weights,
so GUARANTEED_INTERIOR regions lower the energy of any box covering them,
while BORDER and GUARANTEED_EXTERIOR regions raise it. Whatever part of the
box lies outside the field's domain contributes nothing to the first term.

Interior cells are summed from the field's cached full-cell integrals; only
the partial cells cut by the box's six faces need a coefficient block. The
gradient follows from the Leibniz rule: the derivative with respect to a
face coordinate is (plus or minus) the weight field integrated over that face.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

import tricubic
from fit_box import Box3D
from fitting_errors import ConfigurationError, StateError
from sdf_grid import SignedDistanceField

logger = logging.getLogger(__name__)


@dataclass
class EnergyConfig:
    """Weights of the auxiliary energy terms."""
    volume_cost: float = 0.05       # per unit volume, on top of the field
    min_edge: float = 0.0           # barrier threshold; 0 disables the barrier
    barrier_weight: float = 1000.0
    fd_step_units: float = 1e-6     # finite-difference step, in voxel units


@dataclass
class _AxisSegments:
    """Cells crossed by an interval on one axis, with local sub-intervals."""
    cells: np.ndarray       # (n,) cell indices
    u0: np.ndarray          # (n,) local start in [0, 1]
    u1: np.ndarray          # (n,) local end in [0, 1]

    @property
    def full(self) -> np.ndarray:
        return (self.u0 == 0.0) & (self.u1 == 1.0)

    def __len__(self) -> int:
        return len(self.cells)


def _axis_segments(lo: float, hi: float, n_cells: int) -> _AxisSegments:
    """Split the grid-coordinate interval [lo, hi] into per-cell pieces."""
    lo = min(max(lo, 0.0), float(n_cells))
    hi = min(max(hi, 0.0), float(n_cells))
    if hi <= lo:
        empty = np.zeros(0)
        return _AxisSegments(np.zeros(0, dtype=int), empty, empty)
    first = min(int(np.floor(lo)), n_cells - 1)
    last = max(min(int(np.ceil(hi)) - 1, n_cells - 1), first)
    cells = np.arange(first, last + 1)
    u0 = np.clip(lo - cells, 0.0, 1.0)
    u1 = np.clip(hi - cells, 0.0, 1.0)
    return _AxisSegments(cells, u0, u1)


class BoxEnergy:
    """Energy model bound to one frozen field."""

    def __init__(self, field: SignedDistanceField, config: Optional[EnergyConfig] = None):
        if not field.is_frozen:
            raise StateError(
                f"Energy needs a frozen field (state: {field.state.name})"
            )
        self.field = field
        self.config = config or EnergyConfig()
        if self.config.min_edge < 0 or self.config.barrier_weight < 0:
            raise ConfigurationError("Barrier threshold and weight must be >= 0")
        if self.config.fd_step_units <= 0:
            raise ConfigurationError("Finite-difference step must be > 0")
        self._origin = field.bounds.min_corner
        self._spacing = field.spacing
        self._cells = np.array(field.cell_shape)

    # ------------------------------------------------------------------
    # Field integrals
    # ------------------------------------------------------------------

    def _to_grid(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        lo = (x[:3] - self._origin) / self._spacing
        hi = (x[3:] - self._origin) / self._spacing
        return lo, hi

    def _blocks(self, ii: np.ndarray, jj: np.ndarray, kk: np.ndarray) -> np.ndarray:
        return np.stack([
            self.field.cell_coefficients(int(i), int(j), int(k))
            for i, j, k in zip(ii, jj, kk)
        ])

    def field_integral(self, x: np.ndarray) -> float:
        """Integral of the interpolated weights over the box part inside the domain."""
        lo, hi = self._to_grid(x)
        segs = [_axis_segments(lo[a], hi[a], self._cells[a]) for a in range(3)]
        if any(len(s) == 0 for s in segs):
            return 0.0

        total = 0.0
        full = [s.full for s in segs]
        if all(f.any() for f in full):
            # Full cells form one contiguous block: only end segments are partial.
            sl = tuple(
                slice(int(s.cells[f][0]), int(s.cells[f][-1]) + 1)
                for s, f in zip(segs, full)
            )
            total += float(self.field.full_box_values[sl].sum())

        a, b, c = np.meshgrid(
            np.arange(len(segs[0])), np.arange(len(segs[1])), np.arange(len(segs[2])),
            indexing="ij",
        )
        partial = ~(full[0][a] & full[1][b] & full[2][c])
        a, b, c = a[partial], b[partial], c[partial]
        if len(a):
            blocks = self._blocks(segs[0].cells[a], segs[1].cells[b], segs[2].cells[c])
            moments = [
                tricubic.interval_moments(s.u0[idx], s.u1[idx])
                for s, idx in zip(segs, (a, b, c))
            ]
            local = tricubic.integrate(blocks, *moments).sum()
            total += float(local) * self.field.cell_volume
        return total

    def face_integral(self, x: np.ndarray, axis: int, upper: bool) -> float:
        """Weight field integrated over one face of the box.

        Faces outside the domain integrate to zero; faces lying on the
        domain boundary are evaluated from the inside.
        """
        lo, hi = self._to_grid(x)
        t = hi[axis] if upper else lo[axis]
        n = int(self._cells[axis])
        if t < 0.0 or t > n:
            return 0.0
        cell = min(int(np.floor(t)), n - 1)
        s = t - cell

        others = [a for a in range(3) if a != axis]
        segs = {a: _axis_segments(lo[a], hi[a], self._cells[a]) for a in others}
        if any(len(seg) == 0 for seg in segs.values()):
            return 0.0

        p, q = np.meshgrid(
            np.arange(len(segs[others[0]])), np.arange(len(segs[others[1]])),
            indexing="ij",
        )
        p, q = p.ravel(), q.ravel()
        index = {axis: np.full(len(p), cell)}
        index[others[0]] = segs[others[0]].cells[p]
        index[others[1]] = segs[others[1]].cells[q]
        blocks = self._blocks(index[0], index[1], index[2])

        vectors = {axis: np.tile(tricubic.powers(s), (len(p), 1))}
        for a, idx in ((others[0], p), (others[1], q)):
            vectors[a] = tricubic.interval_moments(segs[a].u0[idx], segs[a].u1[idx])
        local = tricubic.integrate(blocks, vectors[0], vectors[1], vectors[2]).sum()
        area = float(self._spacing[others[0]] * self._spacing[others[1]])
        return float(local) * area

    # ------------------------------------------------------------------
    # Energy and gradient
    # ------------------------------------------------------------------

    def _energy(self, x: np.ndarray) -> float:
        lengths = x[3:] - x[:3]
        energy = self.field_integral(x)
        energy += self.config.volume_cost * float(np.prod(np.maximum(lengths, 0.0)))
        if self.config.min_edge > 0:
            short = np.maximum(self.config.min_edge - lengths, 0.0)
            energy += self.config.barrier_weight * float(np.sum(short ** 3))
        return energy

    def _gradient(self, x: np.ndarray) -> np.ndarray:
        lengths = np.maximum(x[3:] - x[:3], 0.0)
        grad = np.zeros(6)
        for axis in range(3):
            grad[axis] = -self.face_integral(x, axis, upper=False)
            grad[axis + 3] = self.face_integral(x, axis, upper=True)
            cross_section = float(np.prod(np.delete(lengths, axis)))
            grad[axis] -= self.config.volume_cost * cross_section
            grad[axis + 3] += self.config.volume_cost * cross_section
        if self.config.min_edge > 0:
            short = np.maximum(self.config.min_edge - (x[3:] - x[:3]), 0.0)
            pull = 3.0 * self.config.barrier_weight * short ** 2
            grad[:3] += pull
            grad[3:] -= pull
        return grad

    @staticmethod
    def _check_vector(x) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64).reshape(6)
        if np.any(x[3:] < x[:3]):
            raise ValueError(f"Box vector has min > max: {x.tolist()}")
        return x

    def energy_vector(self, x) -> float:
        return self._energy(self._check_vector(x))

    def gradient_vector(self, x) -> np.ndarray:
        return self._gradient(self._check_vector(x))

    def energy(self, box: Box3D) -> float:
        """Scalar energy of *box*; always finite."""
        return self._energy(box.as_vector())

    def gradient(self, box: Box3D) -> np.ndarray:
        """Analytic gradient (d/dminX, d/dminY, d/dminZ, d/dmaxX, d/dmaxY, d/dmaxZ)."""
        return self._gradient(box.as_vector())

    def finite_difference_gradient(self, box: Box3D, h: Optional[float] = None) -> np.ndarray:
        """Central-difference estimate of the gradient."""
        if h is None:
            h = self.config.fd_step_units * self.field.unit
        x = box.as_vector()
        grad = np.zeros(6)
        for i in range(6):
            xp, xm = x.copy(), x.copy()
            xp[i] += h
            xm[i] -= h
            grad[i] = (self._energy(xp) - self._energy(xm)) / (2.0 * h)
        return grad

    def check_gradient(self, box: Box3D, tolerance: float = 1e-4) -> float:
        """Compare analytic and finite-difference gradients.

        Mismatches are logged, not raised. Returns the norm of the difference.
        """
        analytic = self.gradient(box)
        numeric = self.finite_difference_gradient(box)
        error = float(np.linalg.norm(analytic - numeric))
        if error > tolerance:
            logger.warning(
                "Gradient mismatch %.3e on box %s: analytic=%s finite=%s",
                error, box.as_vector().tolist(), analytic.tolist(), numeric.tolist(),
            )
        else:
            logger.debug("Gradient check ok (%.3e)", error)
        return error

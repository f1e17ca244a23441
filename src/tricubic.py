"""
Tricubic interpolation on a regular grid.

Each grid cell carries a polynomial

    p(u, v, w) = sum_{p,q,r=0..3} a[p, q, r] * u**p * v**q * w**r

on local coordinates u, v, w in [0, 1]. The 64 coefficients are fixed by the
value and the derivatives f_x, f_y, f_z, f_xy, f_xz, f_yz, f_xyz at the 8 cell
corners (Lekien & Marsden, 2005), which makes the interpolant C1 across cells.
Corner derivatives are estimated in index units by central differences, so
local cell coordinates need no extra scaling.

Everything here works on plain numpy arrays; the field object in sdf_grid
owns the caching.
"""
import itertools
import math
from typing import Tuple

import numpy as np

# Derivative orders of the 8 corner quantities, in data-vector order.
CORNER_QUANTITIES: Tuple[Tuple[int, int, int], ...] = (
    (0, 0, 0),
    (1, 0, 0),
    (0, 1, 0),
    (0, 0, 1),
    (1, 1, 0),
    (1, 0, 1),
    (0, 1, 1),
    (1, 1, 1),
)

# Corner offsets in C order of a 2x2x2 block.
CORNER_OFFSETS: Tuple[Tuple[int, int, int], ...] = tuple(
    itertools.product((0, 1), repeat=3)
)


def _monomial_derivative(power: int, order: int, t: float) -> float:
    """d^order/dt^order of t**power, evaluated at t."""
    if power < order:
        return 0.0
    coeff = math.factorial(power) // math.factorial(power - order)
    return float(coeff) * float(t) ** (power - order)


def _build_interpolation_matrix() -> np.ndarray:
    """Return A with a = A @ x, x the 64 corner constraints.

    Rows of the forward matrix are (quantity, corner) constraints, columns
    the flattened (p, q, r) monomials. Its inverse has integer entries.
    """
    forward = np.zeros((64, 64))
    for qi, (ox, oy, oz) in enumerate(CORNER_QUANTITIES):
        for ci, (cx, cy, cz) in enumerate(CORNER_OFFSETS):
            row = qi * 8 + ci
            for p, q, r in itertools.product(range(4), repeat=3):
                forward[row, 16 * p + 4 * q + r] = (
                    _monomial_derivative(p, ox, cx)
                    * _monomial_derivative(q, oy, cy)
                    * _monomial_derivative(r, oz, cz)
                )
    return np.rint(np.linalg.inv(forward))


INTERPOLATION_MATRIX = _build_interpolation_matrix()
INTERPOLATION_MATRIX.setflags(write=False)

# Integral of each monomial over the unit cube, flattened like coefficients.
_UNIT_MOMENTS = np.array([
    1.0 / ((p + 1) * (q + 1) * (r + 1))
    for p, q, r in itertools.product(range(4), repeat=3)
])

# Full-cell integral as a linear functional of the data vector.
FULL_CELL_FUNCTIONAL = _UNIT_MOMENTS @ INTERPOLATION_MATRIX
FULL_CELL_FUNCTIONAL.setflags(write=False)


def corner_data(values: np.ndarray) -> np.ndarray:
    """Finite-difference corner quantities for every grid vertex.

    Args:
        values: (nx, ny, nz) samples, every axis of length >= 2.

    Returns:
        (8, nx, ny, nz) array ordered like CORNER_QUANTITIES. Interior
        vertices use central differences, boundary vertices one-sided ones.
    """
    f = np.asarray(values, dtype=np.float64)
    fx = np.gradient(f, axis=0)
    fy = np.gradient(f, axis=1)
    fz = np.gradient(f, axis=2)
    fxy = np.gradient(fx, axis=1)
    fxz = np.gradient(fx, axis=2)
    fyz = np.gradient(fy, axis=2)
    fxyz = np.gradient(fxy, axis=2)
    return np.stack([f, fx, fy, fz, fxy, fxz, fyz, fxyz])


def cell_data_vector(data: np.ndarray, i: int, j: int, k: int) -> np.ndarray:
    """Gather the 64 constraints of cell (i, j, k) from corner_data output."""
    block = data[:, i:i + 2, j:j + 2, k:k + 2]
    return block.reshape(64)


def cell_coefficients(data: np.ndarray, i: int, j: int, k: int) -> np.ndarray:
    """Polynomial coefficients of cell (i, j, k), shape (4, 4, 4)."""
    x = cell_data_vector(data, i, j, k)
    return (INTERPOLATION_MATRIX @ x).reshape(4, 4, 4)


def full_cell_integrals(data: np.ndarray) -> np.ndarray:
    """Integral of every cell polynomial over its unit cell.

    Accumulates the linear functional term by term, so no per-cell
    coefficient block is ever materialized.

    Returns:
        (nx-1, ny-1, nz-1) array, in unit-cell (index) volume.
    """
    _, nx, ny, nz = data.shape
    out = np.zeros((nx - 1, ny - 1, nz - 1))
    for qi in range(8):
        for ci, (cx, cy, cz) in enumerate(CORNER_OFFSETS):
            weight = FULL_CELL_FUNCTIONAL[qi * 8 + ci]
            if weight == 0.0:
                continue
            out += weight * data[qi, cx:cx + nx - 1, cy:cy + ny - 1, cz:cz + nz - 1]
    return out


def powers(t) -> np.ndarray:
    """[1, t, t^2, t^3] along a trailing axis."""
    t = np.asarray(t, dtype=np.float64)
    return np.stack([np.ones_like(t), t, t * t, t * t * t], axis=-1)


def power_derivatives(t) -> np.ndarray:
    """d/dt of powers(t)."""
    t = np.asarray(t, dtype=np.float64)
    return np.stack([np.zeros_like(t), np.ones_like(t), 2.0 * t, 3.0 * t * t], axis=-1)


def interval_moments(t0, t1) -> np.ndarray:
    """[int_{t0}^{t1} t^p dt for p in 0..3] along a trailing axis."""
    t0 = np.asarray(t0, dtype=np.float64)
    t1 = np.asarray(t1, dtype=np.float64)
    return np.stack(
        [(t1 ** (p + 1) - t0 ** (p + 1)) / (p + 1) for p in range(4)],
        axis=-1,
    )


def evaluate(coeffs: np.ndarray, u: float, v: float, w: float) -> float:
    """Polynomial value at local coordinates."""
    return float(np.einsum("pqr,p,q,r->", coeffs, powers(u), powers(v), powers(w)))


def evaluate_gradient(coeffs: np.ndarray, u: float, v: float, w: float) -> np.ndarray:
    """Gradient with respect to local coordinates (u, v, w)."""
    pu, pv, pw = powers(u), powers(v), powers(w)
    du, dv, dw = power_derivatives(u), power_derivatives(v), power_derivatives(w)
    return np.array([
        np.einsum("pqr,p,q,r->", coeffs, du, pv, pw),
        np.einsum("pqr,p,q,r->", coeffs, pu, dv, pw),
        np.einsum("pqr,p,q,r->", coeffs, pu, pv, dw),
    ])


def integrate(coeffs: np.ndarray, mx: np.ndarray, my: np.ndarray, mz: np.ndarray) -> np.ndarray:
    """Integrate a batch of cell polynomials against per-axis moment vectors.

    Args:
        coeffs: (N, 4, 4, 4) coefficient blocks.
        mx, my, mz: (N, 4) moment (or power) vectors per axis. Passing
            powers(u) instead of moments along one axis yields a face integral.

    Returns:
        (N,) integrals in local (index) units.
    """
    return np.einsum("npqr,np,nq,nr->n", coeffs, mx, my, mz)

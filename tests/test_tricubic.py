"""Tests for tricubic interpolation helpers."""

import itertools

import numpy as np
import pytest

import tricubic


def _linear_samples(shape=(4, 5, 3)):
    i, j, k = np.meshgrid(*(np.arange(n, dtype=float) for n in shape), indexing="ij")
    return 2.0 * i + 3.0 * j - k + 1.0


class TestInterpolationMatrix:
    def test_integer_entries(self):
        A = tricubic.INTERPOLATION_MATRIX
        assert A.shape == (64, 64)
        np.testing.assert_array_equal(A, np.rint(A))

    def test_read_only(self):
        with pytest.raises(ValueError):
            tricubic.INTERPOLATION_MATRIX[0, 0] = 1.0

    def test_corner_values_reproduced(self, rng):
        values = rng.normal(size=(3, 3, 3))
        data = tricubic.corner_data(values)
        coeffs = tricubic.cell_coefficients(data, 1, 0, 1)
        for dx, dy, dz in tricubic.CORNER_OFFSETS:
            assert tricubic.evaluate(coeffs, dx, dy, dz) == pytest.approx(
                values[1 + dx, dy, 1 + dz], abs=1e-10,
            )


class TestCornerData:
    def test_shape(self):
        data = tricubic.corner_data(np.zeros((3, 4, 5)))
        assert data.shape == (8, 3, 4, 5)

    def test_linear_field_derivatives(self):
        data = tricubic.corner_data(_linear_samples())
        np.testing.assert_allclose(data[1], 2.0)
        np.testing.assert_allclose(data[2], 3.0)
        np.testing.assert_allclose(data[3], -1.0)
        np.testing.assert_allclose(data[4:], 0.0, atol=1e-12)


class TestEvaluation:
    def test_linear_field_reproduced_inside_cells(self):
        samples = _linear_samples()
        data = tricubic.corner_data(samples)
        coeffs = tricubic.cell_coefficients(data, 2, 1, 0)
        for u, v, w in [(0.25, 0.5, 0.75), (0.9, 0.1, 0.3), (0.5, 0.5, 0.5)]:
            expected = 2.0 * (2 + u) + 3.0 * (1 + v) - (0 + w) + 1.0
            assert tricubic.evaluate(coeffs, u, v, w) == pytest.approx(expected)
            np.testing.assert_allclose(
                tricubic.evaluate_gradient(coeffs, u, v, w), [2.0, 3.0, -1.0], atol=1e-10,
            )

    def test_powers_and_derivatives(self):
        np.testing.assert_allclose(tricubic.powers(2.0), [1, 2, 4, 8])
        np.testing.assert_allclose(tricubic.power_derivatives(2.0), [0, 1, 4, 12])

    def test_interval_moments(self):
        np.testing.assert_allclose(
            tricubic.interval_moments(0.0, 1.0), [1.0, 1 / 2, 1 / 3, 1 / 4],
        )
        np.testing.assert_allclose(tricubic.interval_moments(0.5, 0.5), 0.0)


class TestIntegrals:
    def test_full_cell_integrals_match_coefficients(self, rng):
        values = rng.normal(size=(4, 3, 3))
        data = tricubic.corner_data(values)
        full = tricubic.full_cell_integrals(data)
        assert full.shape == (3, 2, 2)

        unit = np.tile(tricubic.interval_moments(0.0, 1.0), (1, 1))
        for i, j, k in itertools.product(range(3), range(2), range(2)):
            coeffs = tricubic.cell_coefficients(data, i, j, k)[None]
            expected = tricubic.integrate(coeffs, unit, unit, unit)[0]
            assert full[i, j, k] == pytest.approx(expected, abs=1e-10)

    def test_constant_field_integrates_to_value(self):
        data = tricubic.corner_data(np.full((3, 3, 3), -10.0))
        np.testing.assert_allclose(tricubic.full_cell_integrals(data), -10.0)

    def test_face_integral_with_powers(self):
        data = tricubic.corner_data(_linear_samples())
        coeffs = tricubic.cell_coefficients(data, 0, 0, 0)[None]
        moments = tricubic.interval_moments(0.0, 1.0)[None]
        # Face u = 1: integral of 2*1 + 3v - w + 1 over the unit square.
        face = tricubic.integrate(coeffs, tricubic.powers(1.0)[None], moments, moments)[0]
        assert face == pytest.approx(2.0 + 1.5 - 0.5 + 1.0)

"""Tests for the box energy and its analytic gradient."""

import logging

import numpy as np
import pytest

from box_energy import BoxEnergy, EnergyConfig
from fit_box import Box3D
from fitting_errors import ConfigurationError, StateError


def _random_boxes(rng, n, low=0.02, high=0.98):
    boxes = []
    span = high - low
    for _ in range(n):
        lo = rng.uniform(low, low + 0.6 * span, size=3)
        hi = lo + rng.uniform(0.05, 0.38 * span, size=3)
        boxes.append(Box3D.from_corners(lo, np.minimum(hi, high)))
    return boxes


class TestConstruction:
    def test_requires_frozen_field(self, sphere_field):
        with pytest.raises(StateError):
            BoxEnergy(sphere_field)

    @pytest.mark.parametrize("config", [
        EnergyConfig(min_edge=-1.0),
        EnergyConfig(barrier_weight=-1.0),
        EnergyConfig(fd_step_units=0.0),
    ])
    def test_bad_config(self, interior_field, config):
        with pytest.raises(ConfigurationError):
            BoxEnergy(interior_field, config)

    def test_rejects_inverted_vector(self, interior_field):
        energy = BoxEnergy(interior_field)
        with pytest.raises(ValueError):
            energy.energy_vector([1, 1, 1, 0, 2, 2])


class TestEnergyValues:
    def test_constant_field(self, interior_field):
        energy = BoxEnergy(interior_field)
        box = Box3D.from_corners([0.5, 0.5, 0.5], [2.0, 2.5, 1.5])
        assert energy.energy(box) == pytest.approx(-10.0 * 3.0 + 0.05 * 3.0)

    def test_part_outside_domain_contributes_nothing(self, interior_field):
        energy = BoxEnergy(interior_field)
        box = Box3D.from_corners([-1.0, 1.0, 1.0], [1.0, 2.0, 2.0])
        assert energy.energy(box) == pytest.approx(-10.0 * 1.0 + 0.05 * 2.0)

    def test_box_fully_outside(self, interior_field):
        energy = BoxEnergy(interior_field)
        box = Box3D.from_corners([4.0, 4.0, 4.0], [5.0, 5.0, 5.0])
        assert energy.energy(box) == pytest.approx(0.05)
        np.testing.assert_allclose(energy.gradient(box), [-0.05, -0.05, -0.05, 0.05, 0.05, 0.05])

    def test_degenerate_box(self, interior_field):
        energy = BoxEnergy(interior_field)
        box = Box3D.from_corners([1.0, 1.0, 1.0], [1.0, 2.0, 2.0])
        assert energy.energy(box) == pytest.approx(0.0)

    def test_barrier(self, interior_field):
        energy = BoxEnergy(interior_field, EnergyConfig(volume_cost=0.0, min_edge=1.0))
        box = Box3D.from_corners([1.0, 1.0, 1.0], [1.5, 2.5, 2.5])
        assert energy.energy(box) == pytest.approx(-10.0 * 0.5 * 1.5 * 1.5 + 1000.0 * 0.5 ** 3)

    def test_energy_is_finite_on_sphere(self, frozen_sphere_field, rng):
        energy = BoxEnergy(frozen_sphere_field)
        for box in _random_boxes(rng, 10, low=-0.5, high=1.5):
            assert np.isfinite(energy.energy(box))


class TestGradient:
    def test_constant_field_faces(self, interior_field):
        energy = BoxEnergy(interior_field)
        box = Box3D.from_corners([0.5, 0.5, 0.5], [2.0, 2.5, 1.5])
        grad = energy.gradient(box)
        # Face areas: x -> 2 * 1, y -> 1.5 * 1, z -> 1.5 * 2
        expected_upper = np.array([2.0, 1.5, 3.0]) * (-10.0 + 0.05)
        np.testing.assert_allclose(grad[3:], expected_upper)
        np.testing.assert_allclose(grad[:3], -expected_upper)

    def test_face_on_domain_boundary(self, interior_field):
        energy = BoxEnergy(interior_field)
        box = Box3D.from_corners([0.0, 0.0, 0.0], [3.0, 3.0, 3.0])
        np.testing.assert_allclose(energy.gradient(box)[3:], 9.0 * (-10.0 + 0.05))

    def test_matches_finite_differences(self, soft_sphere_field, rng):
        energy = BoxEnergy(soft_sphere_field)
        for box in _random_boxes(rng, 120):
            analytic = energy.gradient(box)
            numeric = energy.finite_difference_gradient(box)
            assert np.abs(analytic - numeric).max() < 1e-4

    def test_matches_finite_differences_with_barrier(self, soft_sphere_field, rng):
        energy = BoxEnergy(soft_sphere_field, EnergyConfig(min_edge=0.3, barrier_weight=50.0))
        for box in _random_boxes(rng, 20):
            assert energy.check_gradient(box) < 1e-4

    def test_gradient_vector_matches_box(self, soft_sphere_field):
        energy = BoxEnergy(soft_sphere_field)
        box = Box3D.from_corners([0.2, 0.25, 0.3], [0.7, 0.75, 0.8])
        np.testing.assert_array_equal(energy.gradient(box), energy.gradient_vector(box.as_vector()))


class TestGradientCheck:
    def test_passing_check_logs_no_warning(self, soft_sphere_field, caplog):
        energy = BoxEnergy(soft_sphere_field)
        box = Box3D.from_corners([0.2, 0.25, 0.3], [0.7, 0.75, 0.8])
        with caplog.at_level(logging.WARNING, logger="box_energy"):
            error = energy.check_gradient(box)
        assert error < 1e-4
        assert not caplog.records

    def test_mismatch_is_logged_not_raised(self, soft_sphere_field, caplog):
        energy = BoxEnergy(soft_sphere_field)
        box = Box3D.from_corners([0.2, 0.25, 0.3], [0.7, 0.75, 0.8])
        with caplog.at_level(logging.WARNING, logger="box_energy"):
            energy.check_gradient(box, tolerance=-1.0)
        assert any("Gradient mismatch" in r.message for r in caplog.records)

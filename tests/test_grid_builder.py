"""Tests for field generation from meshes and box seeding."""

import numpy as np
import pytest
import trimesh

from bounding_volume import BoundingVolume
from fitting_errors import ConfigurationError
from grid_builder import GridConfig, generate_field, grid_layout, seed_boxes
from sdf_grid import FieldState, SignedDistanceField, WeightLevel
from surface_query import FunctionSurfaceQuery, MeshSurfaceQuery, box_sdf


class TestGridLayout:
    def test_cubic_voxels_and_padding(self):
        bounds = np.array([[0.0, 0.0, 0.0], [2.0, 1.0, 0.5]])
        resolution, lo, hi, voxel = grid_layout(bounds, GridConfig(resolution=21, padding_units=2.0))
        assert voxel == pytest.approx(0.1)
        np.testing.assert_allclose(lo, [-0.2, -0.2, -0.2])
        assert resolution[0] == 25
        assert resolution[1] >= 15 and resolution[2] >= 10
        np.testing.assert_allclose((hi - lo) / (np.array(resolution) - 1), voxel)
        assert np.all(hi >= bounds[1] + 0.2 - 1e-9)

    def test_bad_resolution(self):
        with pytest.raises(ConfigurationError):
            grid_layout(np.array([[0, 0, 0], [1, 1, 1]]), GridConfig(resolution=1))

    def test_flat_mesh(self):
        with pytest.raises(ConfigurationError):
            grid_layout(np.array([[0, 0, 0], [0, 0, 0]]), GridConfig())


class TestSeedBoxes:
    def _field_with_two_blobs(self):
        weights = np.zeros((8, 8, 8))
        weights[1:3, 1:3, 1:3] = WeightLevel.GUARANTEED_INTERIOR.value
        weights[5:7, 4:7, 5] = WeightLevel.GUARANTEED_INTERIOR.value
        field = SignedDistanceField((8, 8, 8), ([0, 0, 0], [7, 7, 7]), weights=weights, target=(0, 1, 0))
        return field

    def test_one_box_per_region(self):
        boxes = seed_boxes(self._field_with_two_blobs())
        assert len(boxes) == 2
        vectors = sorted(tuple(b.as_vector()) for b in boxes)
        assert vectors == [(1, 1, 1, 2, 2, 2), (5, 4, 5, 6, 6, 5)]
        for box in boxes:
            np.testing.assert_allclose(box.target, [0, 1, 0])
        assert boxes.get_box(0).color != boxes.get_box(1).color

    def test_min_vertices(self):
        boxes = seed_boxes(self._field_with_two_blobs(), min_vertices=7)
        assert len(boxes) == 1
        np.testing.assert_array_equal(boxes.get_box(0).as_vector(), [1, 1, 1, 2, 2, 2])
        boxes = seed_boxes(self._field_with_two_blobs(), min_vertices=9)
        assert len(boxes) == 1
        np.testing.assert_array_equal(boxes.get_box(0).as_vector(), [0, 0, 0, 7, 7, 7])

    def test_falls_back_to_full_domain(self):
        field = SignedDistanceField((4, 4, 4), ([0, 0, 0], [1, 2, 3]))
        boxes = seed_boxes(field)
        assert len(boxes) == 1
        np.testing.assert_array_equal(boxes.get_box(0).as_vector(), [0, 0, 0, 1, 2, 3])

    def test_uses_kernel_when_committed(self, frozen_sphere_field):
        boxes = seed_boxes(frozen_sphere_field)
        assert len(boxes) == 1
        kernel = frozen_sphere_field.kernel_bounds()
        np.testing.assert_allclose(boxes.get_box(0).min_corner, kernel.min_corner)
        np.testing.assert_allclose(boxes.get_box(0).max_corner, kernel.max_corner)


class TestGenerateField:
    def test_box_mesh(self, box_mesh):
        pytest.importorskip("rtree")
        field = generate_field(box_mesh, GridConfig(resolution=12))
        assert field.state is FieldState.FROZEN
        assert field.bounds.contains_volume(BoundingVolume(*box_mesh.bounds))
        centre = field.index_of([0.0, 0.0, 0.0])
        assert field.signed_distance_at(*centre) < 0
        assert field.signed_distance_at(0, 0, 0) > 0
        assert field.weight_at(0, 0, 0) == WeightLevel.GUARANTEED_EXTERIOR.value

        boxes = seed_boxes(field)
        assert len(boxes) == 1
        assert np.all(boxes.get_box(0).min_corner > -1.0)
        assert np.all(boxes.get_box(0).max_corner < 1.0)

    def test_unfrozen_option(self, box_mesh):
        pytest.importorskip("rtree")
        field = generate_field(box_mesh, GridConfig(resolution=8, freeze=False))
        assert field.state is FieldState.CLASSIFIED
        assert field.kernel_mask is None

    def test_mesh_query_sign_matches_analytic(self, box_mesh):
        pytest.importorskip("rtree")
        points = np.array([[0.0, 0.0, 0.0], [0.5, 0.2, -0.3], [2.0, 0.0, 0.0], [1.5, 1.5, 1.5]])
        mesh_d = MeshSurfaceQuery(box_mesh).signed_distance(points)
        exact = FunctionSurfaceQuery(box_sdf([-1, -1, -1], [1, 1, 1])).signed_distance(points)
        np.testing.assert_allclose(mesh_d, exact, atol=1e-6)

    def test_empty_mesh(self):
        with pytest.raises(ValueError):
            generate_field(trimesh.Trimesh())

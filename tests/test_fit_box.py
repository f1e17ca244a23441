"""Tests for Box3D geometry, display mesh and persistence."""

import io

import numpy as np
import pytest

from bounding_volume import BoundingVolume
from fit_box import Box3D


class TestGeometry:
    def test_from_corners(self):
        box = Box3D.from_corners([0, 1, 2], [3, 5, 7])
        np.testing.assert_array_equal(box.as_vector(), [0, 1, 2, 3, 5, 7])
        np.testing.assert_array_equal(box.extents, [3, 4, 5])
        assert box.volume == pytest.approx(60.0)
        np.testing.assert_allclose(box.center, [1.5, 3.0, 4.5])

    def test_invalid_corners(self):
        with pytest.raises(ValueError):
            Box3D.from_corners([1, 0, 0], [0, 1, 1])
        box = Box3D.from_corners([0, 0, 0], [1, 1, 1])
        with pytest.raises(ValueError):
            box.set_corners([0, 2, 0], [1, 1, 1])
        with pytest.raises(ValueError):
            box.set_width(-1.0)
        np.testing.assert_array_equal(box.as_vector(), [0, 0, 0, 1, 1, 1])

    def test_corner_accessors_are_copies(self):
        box = Box3D.from_corners([0, 0, 0], [1, 1, 1])
        lo = box.min_corner
        lo[0] = 5.0
        assert box.min_corner[0] == 0.0

    def test_edits(self):
        box = Box3D.from_corners([0, 0, 0], [1, 1, 1])
        box.move([1, -1, 0.5])
        np.testing.assert_allclose(box.as_vector(), [1, -1, 0.5, 2, 0, 1.5])
        box.set_width(3.0)
        box.set_height(0.0)
        box.set_depth(2.0)
        np.testing.assert_allclose(box.extents, [3.0, 0.0, 2.0])
        box.set_anchor(1, [1, 2, 3])
        np.testing.assert_array_equal(box.anchors[1], [1, 2, 3])

    def test_contains_point(self):
        box = Box3D.from_corners([0, 0, 0], [1, 1, 1])
        assert box.contains_point([1, 0.5, 0])
        assert not box.contains_point([1.01, 0.5, 0.5])

    def test_colour_range(self):
        with pytest.raises(ValueError):
            Box3D.from_corners([0, 0, 0], [1, 1, 1], color=(0, 256, 0))


class TestDisplay:
    def test_mesh_matches_bounds(self):
        box = Box3D.from_corners([0, 0, 0], [2, 1, 1])
        mesh = box.calculate_mesh()
        np.testing.assert_allclose(mesh.bounds, [[0, 0, 0], [2, 1, 1]])
        assert mesh.volume == pytest.approx(2.0)

    def test_subdivided_mesh(self):
        box = Box3D.from_corners([0, 0, 0], [2, 1, 1])
        mesh = box.calculate_mesh(minimum_edge=0.3)
        assert mesh.edges_unique_length.max() <= 0.3 + 1e-9
        np.testing.assert_allclose(mesh.bounds, [[0, 0, 0], [2, 1, 1]])

    def test_rotation_applies_to_display_only(self):
        rotation = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
        box = Box3D.from_corners([0, 0, 0], [2, 1, 1], rotation=rotation, target=[1, 0, 0])
        box.generate_piece()
        np.testing.assert_allclose(box.mesh.bounds, [[-1, 0, 0], [0, 2, 1]], atol=1e-12)
        np.testing.assert_allclose(box.rotated_target(), [0, 1, 0], atol=1e-12)
        np.testing.assert_array_equal(box.as_vector(), [0, 0, 0, 2, 1, 1])
        assert box.rotated_extremes().shape == (8, 3)

    def test_copy_is_independent(self):
        box = Box3D.from_corners([0, 0, 0], [1, 1, 1])
        box.generate_piece()
        clone = box.copy()
        clone.move([1, 1, 1])
        clone.anchors[0, 0] = 9.0
        np.testing.assert_array_equal(box.min_corner, [0, 0, 0])
        assert box.anchors[0, 0] == 0.0
        assert clone.mesh is not box.mesh


class TestPersistence:
    def _roundtrip(self, box):
        buf = io.BytesIO()
        box.write(buf)
        buf.seek(0)
        return Box3D.read(buf), buf.getvalue()

    def test_round_trip_without_mesh(self):
        box = Box3D(
            bounds=BoundingVolume([0.1, 0.2, 0.3], [1.5, 2.5, 3.5]),
            anchors=np.arange(9.0).reshape(3, 3),
            color=(12, 200, 255),
            target=[0.0, 0.0, -1.0],
        )
        loaded, data = self._roundtrip(box)
        np.testing.assert_array_equal(loaded.as_vector(), box.as_vector())
        np.testing.assert_array_equal(loaded.anchors, box.anchors)
        np.testing.assert_array_equal(loaded.target, box.target)
        np.testing.assert_array_equal(loaded.rotation, np.eye(3))
        assert loaded.color == (12, 200, 255)
        assert loaded.mesh is None
        # bounds, anchors, colour, target, rotation, mesh flag
        assert len(data) == 48 + 72 + 3 + 24 + 72 + 1

    def test_round_trip_with_mesh(self):
        box = Box3D.from_corners([0, 0, 0], [1, 2, 3])
        box.generate_piece(minimum_edge=0.8)
        loaded, _ = self._roundtrip(box)
        np.testing.assert_array_equal(loaded.mesh.vertices, box.mesh.vertices)
        np.testing.assert_array_equal(loaded.mesh.faces, box.mesh.faces)

    def test_deserialize_failure_keeps_box(self):
        source = Box3D.from_corners([0, 0, 0], [1, 2, 3])
        source.generate_piece()
        buf = io.BytesIO()
        source.write(buf)
        truncated = buf.getvalue()[:-10]

        box = Box3D.from_corners([5, 5, 5], [6, 6, 6], color=(1, 2, 3))
        assert not box.deserialize(io.BytesIO(truncated))
        np.testing.assert_array_equal(box.as_vector(), [5, 5, 5, 6, 6, 6])
        assert box.color == (1, 2, 3)
        assert box.mesh is None

        assert box.deserialize(io.BytesIO(buf.getvalue()))
        np.testing.assert_array_equal(box.as_vector(), [0, 0, 0, 1, 2, 3])
        assert box.mesh is not None

    def test_corrupt_vertex_count_fails_cleanly(self):
        source = Box3D.from_corners([0, 0, 0], [1, 1, 1])
        source.generate_piece()
        buf = io.BytesIO()
        source.write(buf)
        data = bytearray(buf.getvalue())
        # The vertex count follows the fixed-size part and the mesh flag.
        offset = 48 + 72 + 3 + 24 + 72 + 1
        data[offset:offset + 8] = (1 << 27).to_bytes(8, "little")

        box = Box3D.from_corners([5, 5, 5], [6, 6, 6])
        assert not box.deserialize(io.BytesIO(bytes(data)))
        np.testing.assert_array_equal(box.as_vector(), [5, 5, 5, 6, 6, 6])

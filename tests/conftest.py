"""
Shared test fixtures for the box-fitting engine tests.
"""
import sys
from pathlib import Path

import numpy as np
import pytest
import trimesh

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sdf_grid import ClassificationConfig, SignedDistanceField, WeightLevel
from surface_query import FunctionSurfaceQuery, sphere_sdf


@pytest.fixture
def sphere_surface():
    """Sphere of radius 0.3 centred in the unit cube."""
    return FunctionSurfaceQuery(sphere_sdf([0.5, 0.5, 0.5], 0.3))


@pytest.fixture
def sphere_field(sphere_surface):
    """Classified but not frozen 12^3 field over the unit cube."""
    field = SignedDistanceField.build((12, 12, 12), ([0, 0, 0], [1, 1, 1]), sphere_surface)
    field.classify_border_weights(sphere_surface)
    return field


@pytest.fixture
def frozen_sphere_field(sphere_surface):
    """Frozen 12^3 sphere field with a committed kernel."""
    field = SignedDistanceField.build((12, 12, 12), ([0, 0, 0], [1, 1, 1]), sphere_surface)
    field.classify_and_freeze(sphere_surface, guard_distance=0.15)
    return field


@pytest.fixture
def soft_sphere_field(sphere_surface):
    """Frozen sphere field without a GUARANTEED_EXTERIOR band.

    Keeps the weights in [-10, 5] so finite differences stay well conditioned.
    """
    field = SignedDistanceField.build(
        (12, 12, 12), ([0, 0, 0], [1, 1, 1]), sphere_surface,
        classification=ClassificationConfig(exterior_guard_units=100.0),
    )
    field.classify_and_freeze(sphere_surface, guard_distance=0.15)
    return field


@pytest.fixture
def spike_field():
    """5^3 grid on [0, 4]^3: STANDARD everywhere but the centre vertex."""
    field = SignedDistanceField((5, 5, 5), ([0, 0, 0], [4, 4, 4]))
    field.set_vertex_weight(2, 2, 2, WeightLevel.GUARANTEED_INTERIOR)
    field.freeze()
    return field


@pytest.fixture
def interior_field():
    """Frozen 4^3 field on [0, 3]^3 where every vertex is GUARANTEED_INTERIOR."""
    weights = np.full((4, 4, 4), WeightLevel.GUARANTEED_INTERIOR.value)
    field = SignedDistanceField((4, 4, 4), ([0, 0, 0], [3, 3, 3]), weights=weights)
    field.freeze()
    return field


@pytest.fixture
def box_mesh():
    """A 2x2x2 box mesh centred at the origin."""
    return trimesh.creation.box(extents=[2, 2, 2])


@pytest.fixture
def rng():
    return np.random.default_rng(42)

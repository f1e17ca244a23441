"""
Ordered collection of independently optimized boxes.

minimize_all runs gradient_descent on every box. Small batches run
sequentially; larger ones go through a bounded thread pool. Both paths call
the same per-box routine, and boxes never read each other's state, so the
result for each box does not depend on the dispatch path.
"""
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import BinaryIO, Iterator, List, Optional, Union

import numpy as np

from binary_io import BinaryReader, BinaryWriter
from bounding_volume import BoundingVolume
from box_energy import BoxEnergy, EnergyConfig
from box_optimizer import OptimizationResult, OptimizerConfig, gradient_descent
from fit_box import Box3D
from fitting_errors import SerializationError
from sdf_grid import SignedDistanceField

logger = logging.getLogger(__name__)

PARALLEL_THRESHOLD = 10

_MAX_SERIALIZED_BOXES = 1 << 24


class BoxCollection:
    """A batch of candidate boxes. Holds no reference to the field."""

    def __init__(self, boxes: Optional[List[Box3D]] = None):
        self._boxes: List[Box3D] = list(boxes) if boxes else []

    def __len__(self) -> int:
        return len(self._boxes)

    def __iter__(self) -> Iterator[Box3D]:
        return iter(self._boxes)

    @property
    def boxes(self) -> List[Box3D]:
        return list(self._boxes)

    def add_box(self, box: Box3D):
        self._boxes.append(box)

    def insert_box(self, index: int, box: Box3D):
        self._boxes.insert(index, box)

    def remove_box(self, index: int) -> Box3D:
        return self._boxes.pop(index)

    def get_box(self, index: int) -> Box3D:
        return self._boxes[index]

    def set_box(self, index: int, box: Box3D):
        self._boxes[index] = box

    def clear(self):
        self._boxes.clear()

    def bounding_volume(self) -> Optional[BoundingVolume]:
        """Smallest volume enclosing every box, or None when empty."""
        if not self._boxes:
            return None
        mins = np.array([b.bounds.min_corner for b in self._boxes])
        maxs = np.array([b.bounds.max_corner for b in self._boxes])
        return BoundingVolume(mins.min(axis=0), maxs.max(axis=0))

    def copy(self) -> "BoxCollection":
        return BoxCollection([b.copy() for b in self._boxes])

    # ------------------------------------------------------------------
    # Batch optimization
    # ------------------------------------------------------------------

    def minimize_all(
        self,
        field: Union[SignedDistanceField, BoxEnergy],
        config: Optional[OptimizerConfig] = None,
        energy_config: Optional[EnergyConfig] = None,
        max_workers: Optional[int] = None,
        parallel_threshold: int = PARALLEL_THRESHOLD,
    ) -> List[OptimizationResult]:
        """Optimize every box in place; returns results in box order.

        Args:
            field: Frozen field (or a prebuilt energy model) shared read-only
                by all boxes.
            config: Optimizer settings shared by every run.
            energy_config: Energy settings, used when *field* is a field.
            max_workers: Pool size; defaults to the CPU count.
            parallel_threshold: Batches up to this size run sequentially.
        """
        if isinstance(field, BoxEnergy):
            energy_model = field
        else:
            energy_model = BoxEnergy(field, energy_config)
        if config is None:
            config = OptimizerConfig()
        config.validate()

        n = len(self._boxes)
        results: List[Optional[OptimizationResult]] = [None] * n
        start = time.perf_counter()

        if n <= parallel_threshold:
            for i in range(n):
                results[i] = self._minimize_one(energy_model, i, config)
        else:
            workers = max(1, min(max_workers or os.cpu_count() or 1, n))
            logger.info("Minimizing %d boxes on %d workers", n, workers)
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self._minimize_one, energy_model, i, config): i
                    for i in range(n)
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()

        failures = sum(1 for r in results if not r.converged)
        logger.info(
            "Minimized %d boxes in %.2fs (%d hit the iteration cap)",
            n, time.perf_counter() - start, failures,
        )
        return results

    def _minimize_one(
        self,
        energy_model: BoxEnergy,
        index: int,
        config: OptimizerConfig,
    ) -> OptimizationResult:
        start = time.perf_counter()
        result = gradient_descent(energy_model, self._boxes[index], config)
        logger.debug(
            "Box %d: energy %.6g in %d iterations (%.3fs)",
            index, result.energy, result.iterations, time.perf_counter() - start,
        )
        return result

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def write(self, stream: BinaryIO):
        BinaryWriter(stream).write_u32(len(self._boxes))
        for box in self._boxes:
            box.write(stream)

    @classmethod
    def read(cls, stream: BinaryIO) -> "BoxCollection":
        count = BinaryReader(stream).read_u32()
        if count > _MAX_SERIALIZED_BOXES:
            raise SerializationError(f"Implausible box count {count}")
        return cls([Box3D.read(stream) for _ in range(count)])

    def deserialize(self, stream: BinaryIO) -> bool:
        """Replace the boxes with those in *stream*; untouched on failure."""
        try:
            loaded = BoxCollection.read(stream)
        except SerializationError as e:
            logger.warning("Box collection deserialization failed: %s", e)
            return False
        self._boxes = loaded._boxes
        return True

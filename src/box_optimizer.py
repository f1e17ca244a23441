"""
Backtracking gradient descent on the six box coordinates.

Each iteration proposes ``x - step * gradient``. A proposal is accepted only
if it is a valid box with strictly lower energy; the step then grows (up to
max_step). Otherwise the step shrinks and the proposal is retried from the
same point. The run stops on a small gradient, a negligible accepted
improvement, a step below min_step, or the iteration cap. Reaching the cap is
reported as CONVERGENCE_FAILURE alongside the best energy found.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import numpy as np

from box_energy import BoxEnergy, EnergyConfig
from fit_box import Box3D
from fitting_errors import ConfigurationError
from sdf_grid import SignedDistanceField

logger = logging.getLogger(__name__)


@dataclass
class OptimizerConfig:
    """Step-size schedule and stopping rules."""
    initial_step: float = 1.0
    grow_factor: float = 2.0
    shrink_factor: float = 0.5
    max_step: float = 1e3
    min_step: float = 1e-12
    gradient_tolerance: float = 1e-6
    energy_tolerance: float = 1e-10
    max_iterations: int = 2000

    def validate(self) -> None:
        if not self.initial_step > 0:
            raise ConfigurationError("OptimizerConfig.initial_step must be > 0")
        if not 0 < self.shrink_factor < 1:
            raise ConfigurationError("OptimizerConfig.shrink_factor must be in (0, 1)")
        if self.grow_factor < 1:
            raise ConfigurationError("OptimizerConfig.grow_factor must be >= 1")
        if self.max_step < self.initial_step:
            raise ConfigurationError("OptimizerConfig.max_step must be >= initial_step")
        if self.min_step < 0:
            raise ConfigurationError("OptimizerConfig.min_step must be >= 0")
        if self.max_iterations < 1:
            raise ConfigurationError("OptimizerConfig.max_iterations must be >= 1")


class OptimizerStatus(Enum):
    CONVERGED = "converged"                     # gradient norm below tolerance
    CONVERGED_ENERGY = "converged_energy"       # accepted improvement below tolerance
    STEP_UNDERFLOW = "step_underflow"           # no descent found above min_step
    CONVERGENCE_FAILURE = "convergence_failure"  # iteration cap reached


@dataclass
class OptimizationResult:
    energy: float
    status: OptimizerStatus
    iterations: int         # proposals evaluated
    accepted_steps: int
    initial_energy: float

    @property
    def converged(self) -> bool:
        return self.status is not OptimizerStatus.CONVERGENCE_FAILURE


def gradient_descent(
    energy_model: BoxEnergy,
    box: Box3D,
    config: Optional[OptimizerConfig] = None,
    trace: Optional[List[Box3D]] = None,
) -> OptimizationResult:
    """Minimize the energy of *box* in place.

    Args:
        energy_model: Energy bound to a frozen field.
        box: Box to optimize; mutated to the final minimizer.
        config: Step schedule and stopping rules. Uses defaults if None.
        trace: If given, receives a copy of the initial box and of every
            accepted box, in order.

    Returns:
        OptimizationResult with the final energy and the stop reason.
    """
    if config is None:
        config = OptimizerConfig()
    config.validate()

    x = box.as_vector()
    energy = energy_model.energy_vector(x)
    initial_energy = energy
    grad = energy_model.gradient_vector(x)
    if trace is not None:
        trace.append(box.copy())

    step = config.initial_step
    iterations = 0
    accepted = 0
    while True:
        if float(np.linalg.norm(grad)) < config.gradient_tolerance:
            status = OptimizerStatus.CONVERGED
            break
        if iterations >= config.max_iterations:
            status = OptimizerStatus.CONVERGENCE_FAILURE
            break
        if step < config.min_step:
            status = OptimizerStatus.STEP_UNDERFLOW
            break

        iterations += 1
        trial = x - step * grad
        if np.all(trial[3:] >= trial[:3]):
            trial_energy = energy_model.energy_vector(trial)
            if trial_energy < energy:
                improvement = energy - trial_energy
                x, energy = trial, trial_energy
                grad = energy_model.gradient_vector(x)
                accepted += 1
                box.set_vector(x)
                if trace is not None:
                    trace.append(box.copy())
                logger.debug(
                    "Iteration %d: energy %.8g (step %.3g)", iterations, energy, step,
                )
                step = min(step * config.grow_factor, config.max_step)
                if improvement < config.energy_tolerance:
                    status = OptimizerStatus.CONVERGED_ENERGY
                    break
                continue
        step *= config.shrink_factor

    box.set_vector(x)
    result = OptimizationResult(
        energy=energy,
        status=status,
        iterations=iterations,
        accepted_steps=accepted,
        initial_energy=initial_energy,
    )
    if status is OptimizerStatus.CONVERGENCE_FAILURE:
        logger.warning(
            "Gradient descent hit the %d-iteration cap: energy %.6g -> %.6g",
            config.max_iterations, initial_energy, energy,
        )
    else:
        logger.debug(
            "Gradient descent %s after %d iterations (%d accepted): energy %.6g -> %.6g",
            status.value, iterations, accepted, initial_energy, energy,
        )
    return result


def minimize_box(
    field: SignedDistanceField,
    box: Box3D,
    energy_config: Optional[EnergyConfig] = None,
    config: Optional[OptimizerConfig] = None,
    trace: Optional[List[Box3D]] = None,
) -> OptimizationResult:
    """Build the energy for *field* and run gradient_descent on *box*."""
    return gradient_descent(BoxEnergy(field, energy_config), box, config, trace)

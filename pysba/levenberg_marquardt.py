#!/usr/bin/env python3
"""
Levenberg-Marquardt controller for sparse bundle adjustment.

The damping strategy follows the Sparse Bundle Adjustment technical report
of Lourakis and Argyros: on a successful step mu is scaled by
max(1/3, 1 - (2 dF/dL - 1)^3) and nu is reset to 2; on a failed step mu is
multiplied by nu and nu doubles.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List

import numpy as np

from pysba.config import BundleAdjustmentOptions
from pysba.problem import BundleAdjustmentProblem
from pysba.reprojection import ReprojectionEvaluation
from pysba.schur import SchurComplementSolver

logger = logging.getLogger(__name__)

# nu is a 32-bit signed multiplier; doubling past this wraps around
NU_LIMIT = 2 ** 31 - 1


class TerminationReason(Enum):
    RUNNING = 0
    SMALL_GRADIENT = 1
    SMALL_STEP = 2
    MAX_ITERATIONS_REACHED = 3
    SMALL_RELATIVE_IMPROVEMENT = 4
    SMALL_ABSOLUTE_ERROR = 5
    FAILED_TO_CONVERGE = 6

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    TerminationReason.RUNNING: "optimization is still running",
    TerminationReason.SMALL_GRADIENT: "stopped because the gradient is too small",
    TerminationReason.SMALL_STEP: "stopped because the change in the parameters is too small",
    TerminationReason.MAX_ITERATIONS_REACHED: "stopped because the maximum number of iterations was reached",
    TerminationReason.SMALL_RELATIVE_IMPROVEMENT: "stopped because the relative change in the error is too small",
    TerminationReason.SMALL_ABSOLUTE_ERROR: "stopped because the mean squared reprojection error is below the absolute tolerance",
    TerminationReason.FAILED_TO_CONVERGE: "stopped because the optimization failed to converge",
}


@dataclass
class DampingState:
    """Damping factor mu and its growth multiplier nu, local to one run."""
    mu: float = -math.inf
    nu: int = 2

    def initialize(self, max_diagonal: float, scale: float) -> None:
        self.mu = scale * max(self.mu, max_diagonal)

    def accept(self, dF: float, dL: float) -> None:
        ratio = 2.0 * dF / dL - 1.0
        self.mu *= max(1.0 / 3.0, 1.0 - ratio ** 3)
        self.nu = 2

    def reject(self) -> bool:
        """Increase damping. Returns False once nu can no longer grow or mu overflows."""
        self.mu *= self.nu
        grown = 2 * self.nu
        if grown > NU_LIMIT or not math.isfinite(self.mu):
            return False
        self.nu = grown
        return True


@dataclass
class SolverSummary:
    """Outcome of one Levenberg-Marquardt run on the committed iterate."""
    termination_reason: TerminationReason
    iterations: int
    camera_params: np.ndarray
    points: np.ndarray
    initial_evaluation: ReprojectionEvaluation
    final_evaluation: ReprojectionEvaluation
    cost_history: List[float] = field(default_factory=list)
    num_rejected_steps: int = 0
    max_condition_estimate: float = 0.0

    @property
    def initial_cost(self) -> float:
        return self.initial_evaluation.cost

    @property
    def final_cost(self) -> float:
        return self.final_evaluation.cost


class LevenbergMarquardtSolver:
    """
    Minimizes the total squared reprojection error of a BundleAdjustmentProblem.

    The solver knows nothing about fixed views: their Jacobian blocks are
    zero, so their updates are zero as well.
    """

    def __init__(self, problem: BundleAdjustmentProblem, options: BundleAdjustmentOptions = None):
        self.problem = problem
        self.options = options if options is not None else BundleAdjustmentOptions()
        self.schur_solver = SchurComplementSolver(
            problem.point_index, problem.view_index, problem.num_points, problem.num_views,
            estimate_condition=self.options.max_condition_number is not None)

    def _report(self, message: str, *args) -> None:
        logger.log(logging.INFO if self.options.verbose else logging.DEBUG, message, *args)

    def solve(self) -> SolverSummary:
        problem = self.problem
        options = self.options
        num_views = problem.num_views
        num_observations = problem.num_observations

        camera_params = problem.camera_params.copy()
        points = problem.points.copy()
        damping = DampingState()

        initial_evaluation = problem.compute_residuals(camera_params, points)
        # residuals of the committed iterate
        evaluation = initial_evaluation
        cost_history = [initial_evaluation.cost]
        num_rejected_steps = 0
        max_condition_estimate = 0.0

        reason = TerminationReason.RUNNING
        iteration = 0
        self._report("Starting bundle adjustment: %d views, %d points, %d observations",
                     num_views, problem.num_points, num_observations)

        while reason == TerminationReason.RUNNING:
            iteration += 1
            if iteration > options.max_iterations:
                reason = TerminationReason.MAX_ITERATIONS_REACHED
                break

            evaluation, normal_equations = problem.linearize(camera_params, points)
            e1 = evaluation.cost
            mean_squared_error = e1 / num_observations
            self._report("Iteration %d: mean squared reprojection error = %g", iteration, mean_squared_error)

            if not np.isfinite(mean_squared_error):
                reason = TerminationReason.FAILED_TO_CONVERGE
                break
            if mean_squared_error < options.absolute_tolerance:
                reason = TerminationReason.SMALL_ABSOLUTE_ERROR
                break

            g = normal_equations.gradient
            if np.linalg.norm(g, np.inf) < options.gradient_tolerance:
                reason = TerminationReason.SMALL_GRADIENT
                break

            if iteration == 1:
                damping.initialize(normal_equations.max_diagonal(), options.initial_damping_scale)
                logger.debug("Initial damping factor %g", damping.mu)

            parameter_norm = np.linalg.norm(np.concatenate([camera_params.ravel(), points.ravel()]))
            while True:
                step = self.schur_solver.solve(normal_equations, damping.mu)
                delta = step.delta
                condition = step.camera_solve.condition_estimate
                # nan when the estimate is not computed
                if np.isfinite(condition):
                    max_condition_estimate = max(max_condition_estimate, condition)
                elif not np.isnan(condition):
                    max_condition_estimate = np.inf

                if np.linalg.norm(delta) <= options.step_tolerance * parameter_norm:
                    reason = TerminationReason.SMALL_STEP
                    break

                ill_conditioned = (options.max_condition_number is not None
                                   and not condition <= options.max_condition_number)
                if ill_conditioned:
                    logger.debug("Rejecting step with condition estimate %g", condition)
                    dF = dL = -np.inf
                else:
                    new_camera_params = camera_params + delta[:6 * num_views].reshape(num_views, 6)
                    new_points = points + delta[6 * num_views:].reshape(-1, 3)
                    new_evaluation = problem.compute_residuals(new_camera_params, new_points)
                    e2 = new_evaluation.cost
                    dF = e1 - e2
                    dL = float(delta @ (damping.mu * delta + g))

                if dL > 0 and dF > 0:
                    damping.accept(dF, dL)
                    if (math.sqrt(e1) - math.sqrt(e2)) ** 2 < options.relative_tolerance * e1:
                        reason = TerminationReason.SMALL_RELATIVE_IMPROVEMENT
                    camera_params = new_camera_params
                    points = new_points
                    evaluation = new_evaluation
                    cost_history.append(e2)
                    break

                num_rejected_steps += 1
                if not damping.reject():
                    reason = TerminationReason.FAILED_TO_CONVERGE
                    break

        # an exhausted budget leaves the counter one past max_iterations
        iterations = min(iteration, options.max_iterations)
        self._report("Bundle adjustment %s", reason.description)
        self._report("Initial mean reprojection error: %g pixels",
                     float(np.mean(np.sqrt(initial_evaluation.squared_errors))))
        self._report("Final mean reprojection error: %g pixels",
                     float(np.mean(np.sqrt(evaluation.squared_errors))))

        return SolverSummary(
            termination_reason=reason,
            iterations=iterations,
            camera_params=camera_params,
            points=points,
            initial_evaluation=initial_evaluation,
            final_evaluation=evaluation,
            cost_history=cost_history,
            num_rejected_steps=num_rejected_steps,
            max_condition_estimate=max_condition_estimate,
        )

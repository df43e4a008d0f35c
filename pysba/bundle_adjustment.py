#!/usr/bin/env python3
"""
Bundle adjustment entry points.

refine() and BundleAdjuster run the in-house sparse Levenberg-Marquardt
solver. CeresBundleAdjuster solves the same problem with Ceres through
pyceres, using the same reprojection cost, and is kept as a reference.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pyceres

from pysba.camera_model import CameraModel
from pysba.config import BundleAdjustmentOptions
from pysba.levenberg_marquardt import LevenbergMarquardtSolver, TerminationReason
from pysba.problem import (
    BundleAdjustmentProblem,
    CameraPose,
    PointTrack,
    build_problem,
    parameters_to_pose,
)
from pysba.reprojection import ReprojErrorCost

logger = logging.getLogger(__name__)


@dataclass
class BundleAdjustmentResult:
    """Refined scene and diagnostics of one run."""
    points: np.ndarray
    poses: List[CameraPose]
    reprojection_errors: np.ndarray  # (N,) mean pixel error of each point
    termination_reason: TerminationReason
    iterations: int
    initial_mean_error: float
    final_mean_error: float
    cost_history: List[float] = field(default_factory=list)
    num_rejected_steps: int = 0
    max_condition_estimate: float = 0.0

    def as_tuple(self) -> Tuple[np.ndarray, List[CameraPose], np.ndarray, TerminationReason]:
        return self.points, self.poses, self.reprojection_errors, self.termination_reason


def compute_reprojection_errors(residuals: np.ndarray, point_index: np.ndarray, num_points: int) -> np.ndarray:
    """
    Mean Euclidean pixel error of every point over its observations.

    Args:
        residuals: (M, 2) residuals
        point_index: (M,) point of each residual
        num_points: number of points

    Returns:
        (N,) errors; points without observations get 0
    """
    norms = np.sqrt(np.sum(residuals ** 2, axis=1))
    totals = np.bincount(point_index, weights=norms, minlength=num_points)
    counts = np.bincount(point_index, minlength=num_points)
    return totals / np.maximum(counts, 1)


def _fixed_view_ids(options: BundleAdjustmentOptions, poses: Sequence[CameraPose]) -> set:
    fixed = set(options.fixed_view_ids)
    if options.fix_first_pose and len(poses) > 0:
        view_ids = [pose.view_id for pose in poses]
        try:
            fixed.add(min(view_ids))
        except TypeError:
            fixed.add(view_ids[0])
    return fixed


def _refined_poses(problem: BundleAdjustmentProblem, poses: Sequence[CameraPose],
                   camera_params: np.ndarray) -> List[CameraPose]:
    refined = []
    for j, pose in enumerate(poses):
        if problem.fixed_view_mask[j]:
            refined.append(CameraPose(pose.view_id, np.array(pose.orientation, copy=True),
                                      np.array(pose.location, copy=True)))
        else:
            refined.append(parameters_to_pose(pose.view_id, camera_params[j], problem.pose_dtype))
    return refined


def _mean_error(residuals: np.ndarray) -> float:
    return float(np.mean(np.sqrt(np.sum(residuals ** 2, axis=1))))


class BundleAdjuster:
    """
    Sparse bundle adjustment with a Schur-complement Levenberg-Marquardt solver.
    """

    def __init__(self, options: Optional[BundleAdjustmentOptions] = None, **overrides):
        """
        Initialize the bundle adjuster.

        Args:
            options: run options, defaults when None
            **overrides: option fields to replace, e.g. max_iterations=100
        """
        options = options if options is not None else BundleAdjustmentOptions()
        self.options = options.with_overrides(**overrides)

    def define_problem(self, points, poses: Sequence[CameraPose], tracks: Sequence[PointTrack],
                       cameras: Union[CameraModel, Sequence[CameraModel]]) -> BundleAdjustmentProblem:
        return build_problem(points, poses, tracks, cameras,
                             fixed_view_ids=_fixed_view_ids(self.options, poses),
                             points_are_undistorted=self.options.points_are_undistorted)

    def run(self, points, poses: Sequence[CameraPose], tracks: Sequence[PointTrack],
            cameras: Union[CameraModel, Sequence[CameraModel]]) -> BundleAdjustmentResult:
        """
        Run bundle adjustment.

        Args:
            points: (N, 3) initial 3D points
            poses: initial camera poses
            tracks: one PointTrack per point
            cameras: one CameraModel shared by all views, or one per pose

        Returns:
            BundleAdjustmentResult; the inputs are left untouched
        """
        poses = list(poses)
        problem = self.define_problem(points, poses, tracks, cameras)
        logger.log(logging.INFO if self.options.verbose else logging.DEBUG,
                   "Bundle adjustment: %d cameras, %d points, %d observations",
                   problem.num_views, problem.num_points, problem.num_observations)

        summary = LevenbergMarquardtSolver(problem, self.options).solve()

        residuals = summary.final_evaluation.residuals
        return BundleAdjustmentResult(
            points=summary.points.astype(problem.point_dtype),
            poses=_refined_poses(problem, poses, summary.camera_params),
            reprojection_errors=compute_reprojection_errors(residuals, problem.point_index, problem.num_points),
            termination_reason=summary.termination_reason,
            iterations=summary.iterations,
            initial_mean_error=_mean_error(summary.initial_evaluation.residuals),
            final_mean_error=_mean_error(residuals),
            cost_history=summary.cost_history,
            num_rejected_steps=summary.num_rejected_steps,
            max_condition_estimate=summary.max_condition_estimate,
        )


def refine(points, poses: Sequence[CameraPose], tracks: Sequence[PointTrack],
           cameras: Union[CameraModel, Sequence[CameraModel]],
           options: Optional[BundleAdjustmentOptions] = None,
           **overrides) -> Tuple[np.ndarray, List[CameraPose], np.ndarray, TerminationReason]:
    """
    Refine 3D points and camera poses by minimizing the reprojection error.

    Returns:
        Tuple of (refined_points, refined_poses, reprojection_errors, termination_reason)
    """
    return BundleAdjuster(options, **overrides).run(points, poses, tracks, cameras).as_tuple()


class CeresBundleAdjuster:
    """
    Bundle adjustment of the same problem with Ceres (pyceres).
    """

    def __init__(self, options: Optional[BundleAdjustmentOptions] = None, **overrides):
        options = options if options is not None else BundleAdjustmentOptions()
        self.options = options.with_overrides(**overrides)

    def define_problem(self, problem: BundleAdjustmentProblem) -> Tuple[pyceres.Problem, List[np.ndarray], List[np.ndarray]]:
        """
        Build the Ceres problem.

        Returns:
            pyceres.Problem, per-view pose parameter blocks, per-point parameter blocks
        """
        prob = pyceres.Problem()

        pose_params = [np.array(problem.camera_params[j], dtype=np.float64) for j in range(problem.num_views)]
        point_params = [np.array(problem.points[i], dtype=np.float64) for i in range(problem.num_points)]

        for m in range(problem.num_observations):
            camera_model = problem.cameras[problem.camera_index[m]]
            cost = ReprojErrorCost(problem.measurements[m], camera_model)
            prob.add_residual_block(cost, None, [pose_params[problem.view_index[m]],
                                                 point_params[problem.point_index[m]]])

        for j in np.flatnonzero(problem.fixed_view_mask):
            prob.set_parameter_block_constant(pose_params[j])

        logger.debug("Created problem with %d observations", problem.num_observations)
        return prob, pose_params, point_params

    def solve(self, prob: pyceres.Problem) -> pyceres.SolverSummary:
        """
        Solve the Ceres problem.

        Args:
            prob: pyceres.Problem object

        Returns:
            pyceres.SolverSummary object
        """
        logger.debug("Problem: %d parameter blocks, %d parameters, %d residual blocks, %d residuals",
                     prob.num_parameter_blocks(), prob.num_parameters(),
                     prob.num_residual_blocks(), prob.num_residuals())

        options = pyceres.SolverOptions()
        options.linear_solver_type = pyceres.LinearSolverType.SPARSE_SCHUR
        options.minimizer_progress_to_stdout = self.options.verbose
        options.max_num_iterations = self.options.max_iterations
        options.function_tolerance = self.options.relative_tolerance

        summary = pyceres.SolverSummary()
        pyceres.solve(options, prob, summary)
        logger.debug(summary.BriefReport())
        return summary

    def run(self, points, poses: Sequence[CameraPose], tracks: Sequence[PointTrack],
            cameras: Union[CameraModel, Sequence[CameraModel]]) -> BundleAdjustmentResult:
        poses = list(poses)
        problem = build_problem(points, poses, tracks, cameras,
                                fixed_view_ids=_fixed_view_ids(self.options, poses),
                                points_are_undistorted=self.options.points_are_undistorted)
        prob, pose_params, point_params = self.define_problem(problem)
        summary = self.solve(prob)

        camera_params = np.array(pose_params).reshape(-1, 6)
        refined_points = np.array(point_params).reshape(-1, 3)
        initial = problem.compute_residuals(problem.camera_params, problem.points)
        final = problem.compute_residuals(camera_params, refined_points)

        if summary.termination_type == pyceres.TerminationType.CONVERGENCE:
            reason = TerminationReason.SMALL_RELATIVE_IMPROVEMENT
        elif summary.termination_type == pyceres.TerminationType.NO_CONVERGENCE:
            reason = TerminationReason.MAX_ITERATIONS_REACHED
        else:
            reason = TerminationReason.FAILED_TO_CONVERGE

        return BundleAdjustmentResult(
            points=refined_points.astype(problem.point_dtype),
            poses=_refined_poses(problem, poses, camera_params),
            reprojection_errors=compute_reprojection_errors(final.residuals, problem.point_index, problem.num_points),
            termination_reason=reason,
            iterations=summary.num_successful_steps + summary.num_unsuccessful_steps,
            initial_mean_error=_mean_error(initial.residuals),
            final_mean_error=_mean_error(final.residuals),
            cost_history=[initial.cost, final.cost],
        )

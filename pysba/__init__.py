#!/usr/bin/env python3
"""
pysba - Sparse Bundle Adjustment in Python

Joint refinement of camera poses and 3D points with a Levenberg-Marquardt
solver that eliminates the points through the Schur complement.
"""

__version__ = "0.1.0"

from .camera_model import CameraModel
from .config import BundleAdjustmentOptions, load_options, save_options
from .problem import (
    BundleAdjustmentProblem,
    BundleAdjustmentValidationError,
    CameraPose,
    PointTrack,
    build_problem,
    tracks_from_observations,
)
from .reprojection import ReprojErrorCost, evaluate
from .schur import NormalEquations, SchurComplementSolver, SolveResult, solve_linear_system
from .levenberg_marquardt import DampingState, LevenbergMarquardtSolver, TerminationReason
from .bundle_adjustment import (
    BundleAdjuster,
    BundleAdjustmentResult,
    CeresBundleAdjuster,
    compute_reprojection_errors,
    refine,
)
from .rotation import (
    rotation_matrix_to_angle_axis,
    angle_axis_to_rotation_matrix,
    so3_right_jacobian,
    skew_symmetric
)

__all__ = [
    # Main entry points
    "refine",
    "BundleAdjuster",
    "BundleAdjustmentResult",
    "CeresBundleAdjuster",
    "BundleAdjustmentOptions",
    "load_options",
    "save_options",
    "TerminationReason",

    # Problem description
    "CameraModel",
    "CameraPose",
    "PointTrack",
    "BundleAdjustmentProblem",
    "BundleAdjustmentValidationError",
    "build_problem",
    "tracks_from_observations",
    "compute_reprojection_errors",

    # Solver internals
    "ReprojErrorCost",
    "evaluate",
    "NormalEquations",
    "SchurComplementSolver",
    "SolveResult",
    "solve_linear_system",
    "DampingState",
    "LevenbergMarquardtSolver",

    # Rotation utilities
    "rotation_matrix_to_angle_axis",
    "angle_axis_to_rotation_matrix",
    "so3_right_jacobian",
    "skew_symmetric",
]

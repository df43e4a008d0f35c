#!/usr/bin/env python3
"""
Reprojection residuals and their Jacobians.

A pose is 6 parameters [w, t]: the axis-angle w of the world-to-camera
rotation R followed by the translation t, so a world point X lands at
R @ X + t in the camera frame. Residuals are projected minus observed pixels.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pyceres

from pysba.camera_model import CameraModel
from pysba.rotation import angle_axis_to_rotation_matrix, batch_skew_symmetric, so3_right_jacobian


@dataclass
class ReprojectionEvaluation:
    """Residuals and Jacobian blocks of every observation, in observation order."""
    residuals: np.ndarray  # (M, 2)
    pose_jacobians: Optional[np.ndarray] = None  # (M, 2, 6)
    point_jacobians: Optional[np.ndarray] = None  # (M, 2, 3)

    @property
    def squared_errors(self) -> np.ndarray:
        """Squared pixel error of each observation, (M,)."""
        return np.sum(self.residuals ** 2, axis=1)

    @property
    def cost(self) -> float:
        """Total squared error."""
        return float(np.sum(self.squared_errors))


def pose_rotations(camera_params: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Rotation matrices and SO(3) right Jacobians of every pose.

    Args:
        camera_params: (V, 6) pose parameters

    Returns:
        R: (V, 3, 3), J_r: (V, 3, 3)
    """
    camera_params = np.asarray(camera_params, dtype=np.float64).reshape(-1, 6)
    R = np.empty((camera_params.shape[0], 3, 3))
    J_r = np.empty((camera_params.shape[0], 3, 3))
    for j, w in enumerate(camera_params[:, :3]):
        R[j] = angle_axis_to_rotation_matrix(w)
        J_r[j] = so3_right_jacobian(w)
    return R, J_r


def evaluate_observations(points: np.ndarray,
                          camera_params: np.ndarray,
                          point_index: np.ndarray,
                          view_index: np.ndarray,
                          measurements: np.ndarray,
                          cameras: Sequence[CameraModel],
                          camera_index: np.ndarray,
                          fixed_view_mask: Optional[np.ndarray] = None,
                          compute_jacobians: bool = True) -> ReprojectionEvaluation:
    """
    Evaluate all observations at once.

    Args:
        points: (N, 3) world points
        camera_params: (V, 6) pose parameters
        point_index: (M,) point of each observation
        view_index: (M,) view of each observation
        measurements: (M, 2) observed pixels
        cameras: camera models
        camera_index: (M,) camera model of each observation
        fixed_view_mask: (V,) True for views whose pose Jacobians are zeroed
        compute_jacobians: only compute residuals when False

    Returns:
        ReprojectionEvaluation
    """
    R, J_r = pose_rotations(camera_params)
    R_obs = R[view_index]
    X = points[point_index]
    point_in_camera = np.einsum('mij,mj->mi', R_obs, X) + camera_params[view_index, 3:]

    num_observations = point_index.shape[0]
    projected = np.empty((num_observations, 2))
    J_camera = np.empty((num_observations, 2, 3)) if compute_jacobians else None
    for c, camera_model in enumerate(cameras):
        mask = camera_index == c
        if not np.any(mask):
            continue
        uv, J = camera_model.project_with_jacobian(point_in_camera[mask], compute_jacobians)
        projected[mask] = uv
        if compute_jacobians:
            J_camera[mask] = J

    with np.errstate(invalid='ignore'):
        residuals = projected - measurements
    if not compute_jacobians:
        return ReprojectionEvaluation(residuals)

    with np.errstate(invalid='ignore', over='ignore'):
        # d(R X)/dw = -R [X]x J_r(w)
        J_w = -np.einsum('mij,mjk,mkl->mil', R_obs, batch_skew_symmetric(X), J_r[view_index])
        pose_jacobians = np.empty((num_observations, 2, 6))
        pose_jacobians[:, :, :3] = np.einsum('mij,mjk->mik', J_camera, J_w)
        pose_jacobians[:, :, 3:] = J_camera
        point_jacobians = np.einsum('mij,mjk->mik', J_camera, R_obs)

    if fixed_view_mask is not None:
        pose_jacobians[fixed_view_mask[view_index]] = 0.0

    return ReprojectionEvaluation(residuals, pose_jacobians, point_jacobians)


def evaluate(point: np.ndarray, pose: np.ndarray, camera_model: CameraModel,
             observed: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Evaluate a single (point, view) pair.

    Returns:
        residual (2,), d_residual_d_pose (2, 6), d_residual_d_point (2, 3)
    """
    evaluation = evaluate_observations(
        np.asarray(point, dtype=np.float64).reshape(1, 3),
        np.asarray(pose, dtype=np.float64).reshape(1, 6),
        np.zeros(1, dtype=np.int64),
        np.zeros(1, dtype=np.int64),
        np.asarray(observed, dtype=np.float64).reshape(1, 2),
        [camera_model],
        np.zeros(1, dtype=np.int64))
    return evaluation.residuals[0], evaluation.pose_jacobians[0], evaluation.point_jacobians[0]


class ReprojErrorCost(pyceres.CostFunction):
    """
    Reprojection error cost function for the Ceres reference solver.
    Parameter blocks are [pose (6), point (3)].
    """
    def __init__(self, x_2d: np.ndarray, camera_model: CameraModel):
        super().__init__()
        self.x_2d = np.array(x_2d, dtype=np.float64).reshape(2)
        self.camera_model = camera_model
        self.set_num_residuals(2)
        self.set_parameter_block_sizes([6, 3])

    def Evaluate(self, parameters, residuals, jacobians):
        pose_parameters = parameters[0]
        point_3d_parameters = parameters[1]
        residual, J_pose, J_point = evaluate(point_3d_parameters, pose_parameters,
                                             self.camera_model, self.x_2d)
        if not np.all(np.isfinite(residual)):
            return False
        residuals[:] = residual

        if jacobians is not None:
            if jacobians[0] is not None:
                jacobians[0][:] = J_pose.flatten('C')
            if jacobians[1] is not None:
                jacobians[1][:] = J_point.flatten('C')
        return True

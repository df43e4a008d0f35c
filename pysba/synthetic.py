#!/usr/bin/env python3
"""
Synthetic scenes for testing and demonstrating bundle adjustment.

Cameras sit on a circle around the origin and look at it; points are drawn
from a cube at the origin. Observations are produced by the same evaluator
the optimizer uses, so the ground truth has exactly zero residual.
"""

from dataclasses import dataclass
from typing import Hashable, Iterable, List, Optional, Tuple

import numpy as np

from pysba.camera_model import CameraModel
from pysba.problem import CameraPose, PointTrack, pose_to_parameters, tracks_from_observations
from pysba.reprojection import evaluate_observations
from pysba.rotation import angle_axis_to_rotation_matrix


@dataclass
class SyntheticScene:
    points: np.ndarray  # (N, 3)
    poses: List[CameraPose]
    tracks: List[PointTrack]
    camera_model: CameraModel
    observations: List[Tuple[int, Hashable, np.ndarray]]


def default_camera_model() -> CameraModel:
    K = np.array([
        [800.0, 0.0, 320.0],
        [0.0, 800.0, 240.0],
        [0.0, 0.0, 1.0]
    ])
    return CameraModel(K)


def look_at_orientation(camera_center: np.ndarray, target: np.ndarray = None,
                        up: np.ndarray = None) -> np.ndarray:
    """
    Camera-to-world rotation of a camera at camera_center looking at target.

    The camera z axis points at the target and the y axis points down,
    away from up.
    """
    target = np.zeros(3) if target is None else np.asarray(target, dtype=np.float64)
    up = np.array([0.0, 0.0, 1.0]) if up is None else np.asarray(up, dtype=np.float64)

    forward = target - camera_center
    forward = forward / np.linalg.norm(forward)
    right = np.cross(forward, up)
    right = right / np.linalg.norm(right)
    down = np.cross(forward, right)
    return np.column_stack([right, down, forward])


def project_scene(points: np.ndarray, poses: List[CameraPose], camera_model: CameraModel,
                  visibility: np.ndarray) -> List[Tuple[int, Hashable, np.ndarray]]:
    """
    Exact pixel observations of every visible (point, view) pair, point-major.
    """
    point_index, view_index = np.nonzero(visibility)
    camera_params = np.array([pose_to_parameters(pose) for pose in poses])
    evaluation = evaluate_observations(
        np.asarray(points, dtype=np.float64), camera_params, point_index, view_index,
        np.zeros((point_index.shape[0], 2)), [camera_model],
        np.zeros(point_index.shape[0], dtype=np.int64), compute_jacobians=False)
    return [(int(i), poses[j].view_id, xy)
            for i, j, xy in zip(point_index, view_index, evaluation.residuals)]


def make_synthetic_scene(num_views: int = 6, num_points: int = 40, radius: float = 6.0,
                         height: float = 1.0, extent: float = 1.0,
                         visibility_probability: float = 1.0,
                         camera_model: Optional[CameraModel] = None,
                         seed: int = 0) -> SyntheticScene:
    """
    Create a noise-free scene.

    Args:
        num_views: number of cameras on the circle
        num_points: number of 3D points
        radius: radius of the camera circle
        height: height of the cameras above the points
        extent: points are drawn uniformly from [-extent, extent]^3
        visibility_probability: chance that a point is observed in a view;
            every point is kept in at least two views
        camera_model: intrinsics shared by all views
        seed: random seed

    Returns:
        SyntheticScene
    """
    if num_views < 2:
        raise ValueError("A synthetic scene needs at least two views")
    rng = np.random.default_rng(seed)
    camera_model = default_camera_model() if camera_model is None else camera_model

    poses = []
    for j in range(num_views):
        angle = 2.0 * np.pi * j / num_views
        center = np.array([radius * np.cos(angle), radius * np.sin(angle), height])
        poses.append(CameraPose(j, look_at_orientation(center), center))

    points = rng.uniform(-extent, extent, size=(num_points, 3))

    visibility = rng.random((num_points, num_views)) < visibility_probability
    for i in range(num_points):
        if np.count_nonzero(visibility[i]) < 2:
            visibility[i, rng.choice(num_views, size=2, replace=False)] = True

    observations = project_scene(points, poses, camera_model, visibility)
    tracks = tracks_from_observations(observations, num_points)
    return SyntheticScene(points, poses, tracks, camera_model, observations)


def perturb_scene(scene: SyntheticScene, point_noise: float = 0.05, rotation_noise: float = 0.01,
                  translation_noise: float = 0.05, pixel_noise: float = 0.0,
                  fixed_view_ids: Iterable[Hashable] = (),
                  seed: int = 1) -> Tuple[np.ndarray, List[CameraPose], List[PointTrack]]:
    """
    Noisy copy of a scene.

    Args:
        scene: noise-free scene
        point_noise: std of the Gaussian noise on the 3D points
        rotation_noise: std (radians) of the axis-angle noise on orientations
        translation_noise: std of the noise on camera locations
        pixel_noise: std of the noise on observations
        fixed_view_ids: views whose poses are left exact
        seed: random seed

    Returns:
        Tuple of (points, poses, tracks)
    """
    rng = np.random.default_rng(seed)
    fixed_view_ids = set(fixed_view_ids)

    points = scene.points + rng.normal(scale=point_noise, size=scene.points.shape)

    poses = []
    for pose in scene.poses:
        if pose.view_id in fixed_view_ids:
            poses.append(CameraPose(pose.view_id, pose.orientation.copy(), pose.location.copy()))
            continue
        dR = angle_axis_to_rotation_matrix(rng.normal(scale=rotation_noise, size=3))
        location = pose.location + rng.normal(scale=translation_noise, size=3)
        poses.append(CameraPose(pose.view_id, pose.orientation @ dR, location))

    tracks = []
    for track in scene.tracks:
        noisy = track.points + rng.normal(scale=pixel_noise, size=track.points.shape)
        tracks.append(PointTrack(track.view_ids, noisy))

    return points, poses, tracks

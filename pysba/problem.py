#!/usr/bin/env python3
"""
Conversion of tracks and named camera poses into the fixed array layout the
optimizer works on.

Observations are stored point-major: every observation of point 0 in track
order, then point 1, and so on. point_index / view_index give the point and
view of each row of measurements.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from pysba.camera_model import CameraModel
from pysba.schur import NormalEquations
from pysba.reprojection import ReprojectionEvaluation, evaluate_observations
from pysba.rotation import angle_axis_to_rotation_matrix, rotation_matrix_to_angle_axis

logger = logging.getLogger(__name__)


class BundleAdjustmentValidationError(ValueError):
    """Raised when the inputs of a bundle adjustment are inconsistent."""


@dataclass
class CameraPose:
    """
    Absolute pose of one view.

    orientation is the camera-to-world rotation (its columns are the camera
    axes in world coordinates) and location is the camera center.
    """
    view_id: Hashable
    orientation: np.ndarray
    location: np.ndarray

    def __post_init__(self):
        self.orientation = np.asarray(self.orientation)
        self.location = np.asarray(self.location)


@dataclass
class PointTrack:
    """Observations of one 3D point: view_ids[k] saw the point at points[k]."""
    view_ids: Sequence[Hashable]
    points: np.ndarray

    def __post_init__(self):
        self.view_ids = list(self.view_ids)
        self.points = np.asarray(self.points, dtype=np.float64)

    def __len__(self) -> int:
        return len(self.view_ids)


def pose_to_parameters(pose: CameraPose) -> np.ndarray:
    """CameraPose -> [w, t] with x_cam = R(w) X + t."""
    R = np.asarray(pose.orientation, dtype=np.float64).T
    t = -R @ np.asarray(pose.location, dtype=np.float64)
    return np.concatenate([rotation_matrix_to_angle_axis(R), t])


def parameters_to_pose(view_id: Hashable, parameters: np.ndarray, dtype=np.float64) -> CameraPose:
    """[w, t] -> CameraPose."""
    R = angle_axis_to_rotation_matrix(parameters[:3])
    location = -R.T @ parameters[3:]
    return CameraPose(view_id, R.T.astype(dtype), location.astype(dtype))


def tracks_from_observations(observations: Iterable[Tuple[int, Hashable, np.ndarray]],
                             num_points: Optional[int] = None) -> List[PointTrack]:
    """
    Group (point_idx, view_id, point_2d) observations into one track per point.

    Args:
        observations: observation triples, in any order
        num_points: number of points; defaults to the largest point index + 1

    Returns:
        List of PointTrack, indexed by point
    """
    grouped: Dict[int, List[Tuple[Hashable, np.ndarray]]] = {}
    for point_idx, view_id, point_2d in observations:
        point_idx = int(point_idx)
        if point_idx < 0:
            raise BundleAdjustmentValidationError(f"Negative point index {point_idx}")
        grouped.setdefault(point_idx, []).append((view_id, np.asarray(point_2d, dtype=np.float64).reshape(2)))

    if num_points is None:
        num_points = max(grouped) + 1 if grouped else 0
    elif grouped and max(grouped) >= num_points:
        raise BundleAdjustmentValidationError(
            f"Observation references point {max(grouped)} but only {num_points} points exist")

    tracks = []
    for point_idx in range(num_points):
        entries = grouped.get(point_idx, [])
        view_ids = [view_id for view_id, _ in entries]
        points_2d = np.array([xy for _, xy in entries]).reshape(-1, 2)
        tracks.append(PointTrack(view_ids, points_2d))
    return tracks


@dataclass
class BundleAdjustmentProblem:
    """Array form of a bundle adjustment problem."""
    view_ids: List[Hashable]
    camera_params: np.ndarray  # (V, 6)
    points: np.ndarray  # (N, 3)
    measurements: np.ndarray  # (M, 2)
    point_index: np.ndarray  # (M,)
    view_index: np.ndarray  # (M,)
    visibility: np.ndarray  # (N, V) bool
    cameras: List[CameraModel]
    camera_index: np.ndarray  # (M,)
    fixed_view_mask: np.ndarray  # (V,) bool
    point_dtype: np.dtype = field(default=np.dtype(np.float64))
    pose_dtype: np.dtype = field(default=np.dtype(np.float64))

    @property
    def num_points(self) -> int:
        return self.points.shape[0]

    @property
    def num_views(self) -> int:
        return self.camera_params.shape[0]

    @property
    def num_observations(self) -> int:
        return self.measurements.shape[0]

    @property
    def observation_counts(self) -> np.ndarray:
        """Number of views each point is visible in, (N,)."""
        return np.count_nonzero(self.visibility, axis=1)

    def compute_residuals(self, camera_params: np.ndarray, points: np.ndarray) -> ReprojectionEvaluation:
        return evaluate_observations(points, camera_params, self.point_index, self.view_index,
                                     self.measurements, self.cameras, self.camera_index,
                                     compute_jacobians=False)

    def linearize(self, camera_params: np.ndarray, points: np.ndarray) -> Tuple[ReprojectionEvaluation, NormalEquations]:
        """Residuals and normal-equation blocks at the given iterate."""
        evaluation = evaluate_observations(points, camera_params, self.point_index, self.view_index,
                                           self.measurements, self.cameras, self.camera_index,
                                           fixed_view_mask=self.fixed_view_mask)
        normal_equations = NormalEquations.from_jacobians(
            evaluation.pose_jacobians, evaluation.point_jacobians, evaluation.residuals,
            self.point_index, self.view_index, self.num_points, self.num_views)
        return evaluation, normal_equations


def _float_dtype(array) -> np.dtype:
    """Floating dtype to hand results back in; integer inputs come back as float64."""
    dtype = np.asarray(array).dtype
    return dtype if np.issubdtype(dtype, np.floating) else np.dtype(np.float64)


def _validate_points(points) -> np.ndarray:
    points = np.asarray(points)
    if not np.issubdtype(points.dtype, np.floating) and not np.issubdtype(points.dtype, np.integer):
        raise BundleAdjustmentValidationError(f"points must be numeric, got dtype {points.dtype}")
    if points.ndim != 2 or points.shape[1] != 3 or points.shape[0] == 0:
        raise BundleAdjustmentValidationError(f"points must be a non-empty (N, 3) array, got shape {points.shape}")
    if not np.all(np.isfinite(points)):
        raise BundleAdjustmentValidationError("points must be finite")
    return points


def _validate_poses(poses: Sequence[CameraPose]) -> Dict[Hashable, int]:
    if len(poses) == 0:
        raise BundleAdjustmentValidationError("At least one camera pose is required")

    view_lookup: Dict[Hashable, int] = {}
    for j, pose in enumerate(poses):
        if pose.view_id in view_lookup:
            raise BundleAdjustmentValidationError(f"Duplicate view id {pose.view_id!r} in camera poses")
        view_lookup[pose.view_id] = j
        orientation = np.asarray(pose.orientation)
        location = np.asarray(pose.location)
        if orientation.shape != (3, 3) or location.size != 3:
            raise BundleAdjustmentValidationError(
                f"Pose of view {pose.view_id!r} needs a 3x3 orientation and a 3-vector location")
        if not (np.all(np.isfinite(orientation)) and np.all(np.isfinite(location))):
            raise BundleAdjustmentValidationError(f"Pose of view {pose.view_id!r} must be finite")
    return view_lookup


def _validate_cameras(cameras: Union[CameraModel, Sequence[CameraModel]], num_views: int) -> List[CameraModel]:
    if isinstance(cameras, CameraModel):
        return [cameras]
    cameras = list(cameras)
    if len(cameras) != num_views:
        raise BundleAdjustmentValidationError(
            f"Got {len(cameras)} camera models for {num_views} camera poses")
    for camera_model in cameras:
        if not isinstance(camera_model, CameraModel):
            raise BundleAdjustmentValidationError(f"Expected CameraModel, got {type(camera_model).__name__}")
    return cameras


def build_problem(points, poses: Sequence[CameraPose], tracks: Sequence[PointTrack],
                  cameras: Union[CameraModel, Sequence[CameraModel]],
                  fixed_view_ids: Iterable[Hashable] = (),
                  points_are_undistorted: bool = False) -> BundleAdjustmentProblem:
    """
    Validate the inputs and convert them to a BundleAdjustmentProblem.

    Nothing is optimized and nothing passed in is modified.

    Raises:
        BundleAdjustmentValidationError: on any inconsistent input
    """
    points = _validate_points(points)
    poses = list(poses)
    tracks = list(tracks)
    view_lookup = _validate_poses(poses)
    cameras = _validate_cameras(cameras, len(poses))

    num_points = points.shape[0]
    num_views = len(poses)
    if len(tracks) != num_points:
        raise BundleAdjustmentValidationError(
            f"Number of tracks ({len(tracks)}) must match number of points ({num_points})")

    visibility = np.zeros((num_points, num_views), dtype=bool)
    point_index = []
    view_index = []
    measurements = []
    for i, track in enumerate(tracks):
        if len(track) == 0:
            raise BundleAdjustmentValidationError(f"Track {i} has no observations")
        track_points = np.asarray(track.points, dtype=np.float64)
        if track_points.shape != (len(track.view_ids), 2):
            raise BundleAdjustmentValidationError(
                f"Track {i} has {len(track.view_ids)} view ids but points of shape {track_points.shape}")
        if not np.all(np.isfinite(track_points)):
            raise BundleAdjustmentValidationError(f"Track {i} has non-finite observations")
        for view_id, xy in zip(track.view_ids, track_points):
            if view_id not in view_lookup:
                raise BundleAdjustmentValidationError(
                    f"Track {i} references view id {view_id!r} which is not in the camera poses")
            j = view_lookup[view_id]
            if visibility[i, j]:
                raise BundleAdjustmentValidationError(f"Track {i} observes view id {view_id!r} more than once")
            visibility[i, j] = True
            point_index.append(i)
            view_index.append(j)
            measurements.append(xy)

    point_index = np.array(point_index, dtype=np.int64)
    view_index = np.array(view_index, dtype=np.int64)
    measurements = np.array(measurements, dtype=np.float64).reshape(-1, 2)

    fixed_view_mask = np.zeros(num_views, dtype=bool)
    for view_id in fixed_view_ids:
        if view_id in view_lookup:
            fixed_view_mask[view_lookup[view_id]] = True
        else:
            logger.warning("Fixed view id %r is not among the camera poses and is ignored", view_id)

    if points_are_undistorted:
        cameras = [camera_model.without_distortion() for camera_model in cameras]
    if len(cameras) == 1:
        camera_index = np.zeros(point_index.shape[0], dtype=np.int64)
    else:
        camera_index = view_index.copy()

    camera_params = np.array([pose_to_parameters(pose) for pose in poses])

    return BundleAdjustmentProblem(
        view_ids=[pose.view_id for pose in poses],
        camera_params=camera_params,
        points=points.astype(np.float64),
        measurements=measurements,
        point_index=point_index,
        view_index=view_index,
        visibility=visibility,
        cameras=cameras,
        camera_index=camera_index,
        fixed_view_mask=fixed_view_mask,
        point_dtype=_float_dtype(points),
        pose_dtype=_float_dtype(poses[0].location),
    )

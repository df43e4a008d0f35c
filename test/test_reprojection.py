#!/usr/bin/env python3
"""
Tests for reprojection residuals, their Jacobians and ReprojErrorCost.
"""

import numpy as np
import torch
import unittest

from pysba.camera_model import CameraModel
from pysba.reprojection import ReprojErrorCost, evaluate, evaluate_observations


def skew_symmetric(v):
    # v: (3,)
    return torch.stack([
        torch.stack([torch.zeros_like(v[0]), -v[2], v[1]]),
        torch.stack([v[2], torch.zeros_like(v[0]), -v[0]]),
        torch.stack([-v[1], v[0], torch.zeros_like(v[0])])
    ])


def residual_tensor(pose, point, camera_model, observed):
    """Reference residual in torch: Rodrigues rotation, pinhole projection with distortion."""
    w = pose[:3]
    theta = torch.linalg.norm(w)
    K = skew_symmetric(w / theta)
    R = torch.eye(3, dtype=pose.dtype) + torch.sin(theta) * K + (1 - torch.cos(theta)) * K @ K
    X = R @ point + pose[3:]
    x = X[0] / X[2]
    y = X[1] / X[2]
    k1, k2, k3 = [float(k) for k in camera_model.radial_distortion]
    p1, p2 = [float(p) for p in camera_model.tangential_distortion]
    r2 = x * x + y * y
    radial = 1 + k1 * r2 + k2 * r2 ** 2 + k3 * r2 ** 3
    xd = x * radial + 2 * p1 * x * y + p2 * (r2 + 2 * x * x)
    yd = y * radial + p1 * (r2 + 2 * y * y) + 2 * p2 * x * y
    u = float(camera_model.fx) * xd + float(camera_model.skew) * yd + float(camera_model.cx)
    v = float(camera_model.fy) * yd + float(camera_model.cy)
    return torch.stack([u - float(observed[0]), v - float(observed[1])])


class TestEvaluate(unittest.TestCase):
    def setUp(self):
        """Set up test fixtures before each test method."""
        self.K = np.array([
            [1000.0, 0.0, 320.0],
            [0.0, 1000.0, 240.0],
            [0.0, 0.0, 1.0]
        ])
        self.camera_model = CameraModel(self.K)
        self.distorted_model = CameraModel.from_parameters((1000.0, 980.0), (320.0, 240.0), skew=1.5,
                                                           radial_distortion=[-0.15, 0.03, 0.002],
                                                           tangential_distortion=[1e-3, -5e-4])
        self.pose = np.array([0.1, -0.2, 0.05, 0.3, -0.1, 1.0])
        self.point = np.array([0.4, 0.2, 3.0])
        self.observed = np.array([400.0, 260.0])

    def test_identity_pose_principal_point(self):
        """Point on the optical axis observed at the principal point has zero residual."""
        residual, J_pose, J_point = evaluate(np.array([0.0, 0.0, 2.0]), np.array([0.0, 0.0, 0.0, 0.0, 0.0, 1.0]),
                                             self.camera_model, np.array([320.0, 240.0]))
        np.testing.assert_array_almost_equal(residual, np.zeros(2))
        self.assertEqual(J_pose.shape, (2, 6))
        self.assertEqual(J_point.shape, (2, 3))

    def test_residual_sign(self):
        """Residuals are projected minus observed."""
        point = np.array([0.0, 0.0, 2.0])
        pose = np.zeros(6)
        residual, _, _ = evaluate(point, pose, self.camera_model, np.array([300.0, 250.0]))
        np.testing.assert_array_almost_equal(residual, [20.0, -10.0])

    def test_jacobian_numerical_check(self):
        """Test Jacobians using central finite differences."""
        for camera_model in (self.camera_model, self.distorted_model):
            _, J_pose, J_point = evaluate(self.point, self.pose, camera_model, self.observed)

            eps = 1e-6
            num_jacobian_pose = np.zeros((2, 6))
            for i in range(6):
                pose_plus = self.pose.copy()
                pose_minus = self.pose.copy()
                pose_plus[i] += eps
                pose_minus[i] -= eps
                r_plus, _, _ = evaluate(self.point, pose_plus, camera_model, self.observed)
                r_minus, _, _ = evaluate(self.point, pose_minus, camera_model, self.observed)
                num_jacobian_pose[:, i] = (r_plus - r_minus) / (2 * eps)

            num_jacobian_point = np.zeros((2, 3))
            for i in range(3):
                point_plus = self.point.copy()
                point_minus = self.point.copy()
                point_plus[i] += eps
                point_minus[i] -= eps
                r_plus, _, _ = evaluate(point_plus, self.pose, camera_model, self.observed)
                r_minus, _, _ = evaluate(point_minus, self.pose, camera_model, self.observed)
                num_jacobian_point[:, i] = (r_plus - r_minus) / (2 * eps)

            np.testing.assert_allclose(J_pose, num_jacobian_pose, rtol=1e-5, atol=1e-4)
            np.testing.assert_allclose(J_point, num_jacobian_point, rtol=1e-5, atol=1e-4)

    def test_jacobian_matches_autograd(self):
        """Analytic Jacobians match torch autograd of the full residual."""
        pose_t = torch.tensor(self.pose, dtype=torch.float64)
        point_t = torch.tensor(self.point, dtype=torch.float64)
        for camera_model in (self.camera_model, self.distorted_model):
            residual, J_pose, J_point = evaluate(self.point, self.pose, camera_model, self.observed)
            J_pose_t, J_point_t = torch.autograd.functional.jacobian(
                lambda pose, point: residual_tensor(pose, point, camera_model, self.observed),
                (pose_t, point_t))
            np.testing.assert_allclose(residual, residual_tensor(pose_t, point_t, camera_model, self.observed).numpy(),
                                       rtol=1e-10, atol=1e-8)
            np.testing.assert_allclose(J_pose, J_pose_t.numpy(), rtol=1e-8, atol=1e-6)
            np.testing.assert_allclose(J_point, J_point_t.numpy(), rtol=1e-8, atol=1e-6)

    def test_batched_matches_single(self):
        """evaluate_observations agrees with per-pair evaluate and zeroes fixed views."""
        rng = np.random.default_rng(5)
        points = np.column_stack([rng.uniform(-1, 1, size=(4, 2)), rng.uniform(3, 5, size=4)])
        camera_params = np.array([[0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
                                  [0.05, -0.1, 0.02, 0.5, 0.0, 0.1]])
        point_index = np.array([0, 0, 1, 2, 2, 3])
        view_index = np.array([0, 1, 1, 0, 1, 0])
        measurements = rng.uniform(0, 640, size=(6, 2))
        cameras = [self.camera_model, self.distorted_model]

        evaluation = evaluate_observations(points, camera_params, point_index, view_index, measurements,
                                           cameras, view_index.copy(),
                                           fixed_view_mask=np.array([True, False]))
        for m in range(6):
            residual, J_pose, J_point = evaluate(points[point_index[m]], camera_params[view_index[m]],
                                                 cameras[view_index[m]], measurements[m])
            np.testing.assert_allclose(evaluation.residuals[m], residual, rtol=1e-12, atol=1e-9)
            np.testing.assert_allclose(evaluation.point_jacobians[m], J_point, rtol=1e-12, atol=1e-9)
            if view_index[m] == 0:
                np.testing.assert_array_equal(evaluation.pose_jacobians[m], np.zeros((2, 6)))
            else:
                np.testing.assert_allclose(evaluation.pose_jacobians[m], J_pose, rtol=1e-12, atol=1e-9)

        self.assertAlmostEqual(evaluation.cost, float(np.sum(evaluation.residuals ** 2)))

    def test_residuals_only(self):
        evaluation = evaluate_observations(self.point.reshape(1, 3), self.pose.reshape(1, 6),
                                           np.zeros(1, dtype=np.int64), np.zeros(1, dtype=np.int64),
                                           self.observed.reshape(1, 2), [self.camera_model],
                                           np.zeros(1, dtype=np.int64), compute_jacobians=False)
        self.assertIsNone(evaluation.pose_jacobians)
        self.assertIsNone(evaluation.point_jacobians)
        self.assertEqual(evaluation.residuals.shape, (1, 2))

    def test_deterministic(self):
        first = evaluate(self.point, self.pose, self.distorted_model, self.observed)
        second = evaluate(self.point, self.pose, self.distorted_model, self.observed)
        for a, b in zip(first, second):
            np.testing.assert_array_equal(a, b)


class TestReprojErrorCost(unittest.TestCase):
    def setUp(self):
        """Set up test fixtures before each test method."""
        self.K = np.array([
            [1000.0, 0.0, 320.0],
            [0.0, 1000.0, 240.0],
            [0.0, 0.0, 1.0]
        ])
        self.camera_model = CameraModel(self.K)
        self.x_2d = np.array([350.0, 230.0])
        self.pose_parameters = np.array([0.02, 0.01, -0.03, 0.1, 0.0, 1.0])
        self.point_3d_parameters = np.array([0.1, -0.05, 2.0])

    def test_reproj_error_cost_initialization(self):
        """Test ReprojErrorCost initialization."""
        cost = ReprojErrorCost(self.x_2d, self.camera_model)
        self.assertEqual(cost.x_2d.shape, (2,))
        self.assertIsInstance(cost.camera_model, CameraModel)

    def test_evaluate_matches_evaluator(self):
        """Evaluate fills residuals and row-major Jacobians from the shared evaluator."""
        cost = ReprojErrorCost(self.x_2d, self.camera_model)
        residuals = np.zeros(2)
        jacobians = [np.zeros(12), np.zeros(6)]

        success = cost.Evaluate([self.pose_parameters, self.point_3d_parameters], residuals, jacobians)

        self.assertTrue(success)
        residual, J_pose, J_point = evaluate(self.point_3d_parameters, self.pose_parameters,
                                             self.camera_model, self.x_2d)
        np.testing.assert_array_equal(residuals, residual)
        np.testing.assert_array_equal(jacobians[0].reshape(2, 6), J_pose)
        np.testing.assert_array_equal(jacobians[1].reshape(2, 3), J_point)

    def test_evaluate_without_jacobians(self):
        cost = ReprojErrorCost(self.x_2d, self.camera_model)
        residuals = np.zeros(2)
        self.assertTrue(cost.Evaluate([self.pose_parameters, self.point_3d_parameters], residuals, None))
        self.assertTrue(np.any(np.abs(residuals) > 1e-6))

    def test_evaluate_degenerate_depth(self):
        """A point on the camera plane cannot be evaluated."""
        cost = ReprojErrorCost(self.x_2d, self.camera_model)
        residuals = np.zeros(2)
        point = np.array([0.1, 0.0, 0.0])
        success = cost.Evaluate([np.zeros(6), point], residuals, [None, None])
        self.assertFalse(success)


if __name__ == '__main__':
    unittest.main()

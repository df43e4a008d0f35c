#!/usr/bin/env python3
"""
Normal equations of bundle adjustment and their Schur-complement solve.

With A = dr/dpose and B = dr/dpoint for every visible (point i, view j) pair:

    U_j  = sum_i A_ij^T A_ij        (6x6)
    V_i  = sum_j B_ij^T B_ij        (3x3)
    W_ij = A_ij^T B_ij              (6x3)
    ea_j = -sum_i A_ij^T r_ij       (6)
    eb_i = -sum_j B_ij^T r_ij       (3)

The point blocks are eliminated to give a camera-only system
S dcam = e, and the point updates are recovered by back-substitution.
"""

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class SolveResult:
    """Solution of a linear system plus an estimate of its 2-norm condition number."""
    value: np.ndarray
    condition_estimate: float
    used_least_squares: bool = False


def solve_linear_system(A: np.ndarray, b: np.ndarray, estimate_condition: bool = True) -> SolveResult:
    """
    Solve A x = b without raising on singular or ill-conditioned A.

    A singular A falls back to the minimum-norm least-squares solution. The
    condition estimate is inf for singular systems and nan when it was not
    requested.
    """
    if not (np.all(np.isfinite(A)) and np.all(np.isfinite(b))):
        return SolveResult(np.full(b.shape, np.nan), np.inf)

    with np.errstate(all='ignore'):
        condition = float(np.linalg.cond(A)) if estimate_condition else np.nan
        try:
            return SolveResult(np.linalg.solve(A, b), condition)
        except np.linalg.LinAlgError:
            logger.debug("Singular system, falling back to least squares")
            x, *_ = np.linalg.lstsq(A, b, rcond=None)
            return SolveResult(x, np.inf if estimate_condition else condition, used_least_squares=True)


@dataclass
class NormalEquations:
    """Block form of J^T J and -J^T r at one iterate."""
    U: np.ndarray  # (V, 6, 6)
    V: np.ndarray  # (N, 3, 3)
    W: np.ndarray  # (M, 6, 3)
    ea: np.ndarray  # (V, 6)
    eb: np.ndarray  # (N, 3)
    point_index: np.ndarray  # (M,)
    view_index: np.ndarray  # (M,)

    @classmethod
    def from_jacobians(cls, pose_jacobians: np.ndarray, point_jacobians: np.ndarray, residuals: np.ndarray,
                       point_index: np.ndarray, view_index: np.ndarray,
                       num_points: int, num_views: int) -> 'NormalEquations':
        """
        Accumulate the blocks from per-observation Jacobians.

        Args:
            pose_jacobians: (M, 2, 6)
            point_jacobians: (M, 2, 3)
            residuals: (M, 2)
        """
        A = pose_jacobians
        B = point_jacobians

        # non-finite blocks are caught by the controller through the cost
        with np.errstate(invalid='ignore', over='ignore'):
            U = np.zeros((num_views, 6, 6))
            np.add.at(U, view_index, np.einsum('mki,mkj->mij', A, A))
            V = np.zeros((num_points, 3, 3))
            np.add.at(V, point_index, np.einsum('mki,mkj->mij', B, B))
            W = np.einsum('mki,mkj->mij', A, B)

            ea = np.zeros((num_views, 6))
            np.add.at(ea, view_index, -np.einsum('mki,mk->mi', A, residuals))
            eb = np.zeros((num_points, 3))
            np.add.at(eb, point_index, -np.einsum('mki,mk->mi', B, residuals))

        return cls(U, V, W, ea, eb, point_index, view_index)

    @property
    def num_views(self) -> int:
        return self.U.shape[0]

    @property
    def num_points(self) -> int:
        return self.V.shape[0]

    @property
    def gradient(self) -> np.ndarray:
        """[ea; eb] flattened: 6 entries per view, then 3 per point."""
        return np.concatenate([self.ea.ravel(), self.eb.ravel()])

    def max_diagonal(self) -> float:
        """Largest diagonal entry over all U_j and V_i."""
        diagonals = [np.diagonal(self.U, axis1=1, axis2=2).ravel(),
                     np.diagonal(self.V, axis1=1, axis2=2).ravel()]
        return float(np.max(np.concatenate(diagonals)))


@dataclass
class SchurStep:
    """Damped step [dcam; dpoints] and the result of the reduced camera solve."""
    delta: np.ndarray
    camera_solve: SolveResult


def _invert_point_blocks(V: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.inv(V)
    except np.linalg.LinAlgError:
        logger.debug("Singular point block, using pseudo-inverse")
        return np.linalg.pinv(V)


class SchurComplementSolver:
    """
    Solves the damped normal equations (J^T J + mu I) delta = -J^T r by
    eliminating the point blocks.

    The pairs of observations sharing a point only depend on the visibility
    structure, so they are computed once per problem.
    """

    def __init__(self, point_index: np.ndarray, view_index: np.ndarray, num_points: int, num_views: int,
                 estimate_condition: bool = True):
        self.point_index = np.asarray(point_index, dtype=np.int64)
        self.view_index = np.asarray(view_index, dtype=np.int64)
        self.num_points = num_points
        self.num_views = num_views
        self.estimate_condition = estimate_condition

        order = np.argsort(self.point_index, kind='stable')
        counts = np.bincount(self.point_index, minlength=num_points)
        starts = np.concatenate([[0], np.cumsum(counts)[:-1]])
        first, second = [], []
        for i in range(num_points):
            observations = order[starts[i]:starts[i] + counts[i]]
            m1, m2 = np.meshgrid(observations, observations, indexing='ij')
            first.append(m1.ravel())
            second.append(m2.ravel())
        self.pair_first = np.concatenate(first).astype(np.int64)
        self.pair_second = np.concatenate(second).astype(np.int64)

    def reduce(self, normal_equations: NormalEquations, mu: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Build the reduced camera system.

        Returns:
            S: (6V, 6V), e: (6V,), V_inv: (N, 3, 3) inverses of the damped point blocks
        """
        ne = normal_equations
        U_damped = ne.U + mu * np.eye(6)
        V_damped = ne.V + mu * np.eye(3)
        V_inv = _invert_point_blocks(V_damped)

        # Y_ij = W_ij V_i^-1
        Y = np.einsum('mab,mbc->mac', ne.W, V_inv[self.point_index])

        blocks = np.zeros((self.num_views, self.num_views, 6, 6))
        np.add.at(blocks,
                  (self.view_index[self.pair_first], self.view_index[self.pair_second]),
                  -np.einsum('pab,pcb->pac', Y[self.pair_first], ne.W[self.pair_second]))
        diagonal = np.arange(self.num_views)
        blocks[diagonal, diagonal] += U_damped
        S = blocks.transpose(0, 2, 1, 3).reshape(6 * self.num_views, 6 * self.num_views)

        e = ne.ea.copy()
        np.add.at(e, self.view_index, -np.einsum('mab,mb->ma', Y, ne.eb[self.point_index]))

        return S, e.ravel(), V_inv

    def back_substitute(self, normal_equations: NormalEquations, V_inv: np.ndarray,
                        delta_cameras: np.ndarray) -> np.ndarray:
        """dpoint_i = V_i^-1 (eb_i - sum_j W_ij^T dcam_j), shape (N, 3)."""
        ne = normal_equations
        delta_cameras = delta_cameras.reshape(self.num_views, 6)
        rhs = ne.eb.copy()
        np.add.at(rhs, self.point_index, -np.einsum('mab,ma->mb', ne.W, delta_cameras[self.view_index]))
        return np.einsum('nab,nb->na', V_inv, rhs)

    def solve(self, normal_equations: NormalEquations, mu: float) -> SchurStep:
        """Damped step for damping factor mu."""
        S, e, V_inv = self.reduce(normal_equations, mu)
        camera_solve = solve_linear_system(S, e, self.estimate_condition)
        with np.errstate(all='ignore'):
            delta_points = self.back_substitute(normal_equations, V_inv, camera_solve.value)
        delta = np.concatenate([camera_solve.value.ravel(), delta_points.ravel()])
        return SchurStep(delta, camera_solve)

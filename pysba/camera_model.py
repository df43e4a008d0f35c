#!/usr/bin/env python3
"""
Pinhole camera model with radial and tangential lens distortion.

Intrinsics are fixed for the whole optimization; only the projection and its
derivative with respect to the camera-frame point are needed by the
evaluator.
"""

from typing import Optional, Sequence, Tuple

import numpy as np


class CameraModel:
    """
    Camera intrinsics: focal lengths, principal point, skew and distortion.

    The projection of a camera-frame point (X, Y, Z) is

        x, y   = X / Z, Y / Z
        radial = 1 + k1 r^2 + k2 r^4 + k3 r^6
        xd     = x radial + 2 p1 x y + p2 (r^2 + 2 x^2)
        yd     = y radial + p1 (r^2 + 2 y^2) + 2 p2 x y
        u, v   = fx xd + skew yd + cx, fy yd + cy
    """

    def __init__(self, K: np.ndarray,
                 radial_distortion: Optional[Sequence[float]] = None,
                 tangential_distortion: Optional[Sequence[float]] = None):
        K = np.array(K, dtype=np.float64)
        if K.shape != (3, 3):
            raise ValueError(f"K must be a 3x3 matrix, got shape {K.shape}")
        if not np.all(np.isfinite(K)):
            raise ValueError("K must be finite")
        if K[0, 0] <= 0 or K[1, 1] <= 0:
            raise ValueError("Focal lengths must be positive")

        radial = np.zeros(3) if radial_distortion is None else np.array(radial_distortion, dtype=np.float64).ravel()
        if radial.size not in (2, 3):
            raise ValueError("radial_distortion must have 2 or 3 coefficients")
        tangential = np.zeros(2) if tangential_distortion is None else np.array(tangential_distortion, dtype=np.float64).ravel()
        if tangential.size != 2:
            raise ValueError("tangential_distortion must have 2 coefficients")
        if not (np.all(np.isfinite(radial)) and np.all(np.isfinite(tangential))):
            raise ValueError("Distortion coefficients must be finite")

        self.K = K
        self.fx = K[0, 0]
        self.fy = K[1, 1]
        self.cx = K[0, 2]
        self.cy = K[1, 2]
        self.skew = K[0, 1]
        self.radial_distortion = radial
        self.tangential_distortion = tangential

    @classmethod
    def from_parameters(cls, focal_length: Tuple[float, float], principal_point: Tuple[float, float],
                        skew: float = 0.0,
                        radial_distortion: Optional[Sequence[float]] = None,
                        tangential_distortion: Optional[Sequence[float]] = None) -> 'CameraModel':
        """Create from focal length (fx, fy), principal point (cx, cy) and skew."""
        fx, fy = focal_length
        cx, cy = principal_point
        K = np.array([[fx, skew, cx],
                      [0.0, fy, cy],
                      [0.0, 0.0, 1.0]])
        return cls(K, radial_distortion, tangential_distortion)

    @property
    def has_distortion(self) -> bool:
        return bool(np.any(self.radial_distortion) or np.any(self.tangential_distortion))

    def without_distortion(self) -> 'CameraModel':
        """Same intrinsics with all distortion coefficients dropped."""
        return CameraModel(self.K)

    def _radial_coefficients(self) -> Tuple[float, float, float]:
        k = self.radial_distortion
        k3 = k[2] if k.size == 3 else 0.0
        return k[0], k[1], k3

    def project(self, X: np.ndarray) -> np.ndarray:
        """
        Project camera-frame 3D points (N, 3) to pixels (N, 2).
        """
        uv, _ = self.project_with_jacobian(X, compute_jacobian=False)
        return uv

    def project_with_jacobian(self, X: np.ndarray,
                              compute_jacobian: bool = True) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """
        Project camera-frame points and differentiate the projection.

        Args:
            X: (N, 3) points in the camera frame
            compute_jacobian: skip the derivative when False

        Returns:
            uv: (N, 2) pixel coordinates
            J: (N, 2, 3) d(uv)/dX, or None
        """
        X = np.asarray(X, dtype=np.float64).reshape(-1, 3)

        # points behind or on the image plane produce inf/nan, which the
        # optimizer treats as divergence
        with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
            z_inv = 1.0 / X[:, 2]
            x = X[:, 0] * z_inv
            y = X[:, 1] * z_inv

            if self.has_distortion:
                k1, k2, k3 = self._radial_coefficients()
                p1, p2 = self.tangential_distortion
                r2 = x * x + y * y
                radial = 1.0 + r2 * (k1 + r2 * (k2 + r2 * k3))
                xd = x * radial + 2.0 * p1 * x * y + p2 * (r2 + 2.0 * x * x)
                yd = y * radial + p1 * (r2 + 2.0 * y * y) + 2.0 * p2 * x * y
            else:
                xd = x
                yd = y

            uv = np.column_stack([self.fx * xd + self.skew * yd + self.cx,
                                  self.fy * yd + self.cy])

            if not compute_jacobian:
                return uv, None

            # d(xd, yd) / d(x, y)
            D = np.zeros((X.shape[0], 2, 2))
            if self.has_distortion:
                d_radial = k1 + r2 * (2.0 * k2 + 3.0 * k3 * r2)
                D[:, 0, 0] = radial + 2.0 * x * x * d_radial + 2.0 * p1 * y + 6.0 * p2 * x
                D[:, 0, 1] = 2.0 * x * y * d_radial + 2.0 * p1 * x + 2.0 * p2 * y
                D[:, 1, 0] = 2.0 * x * y * d_radial + 2.0 * p1 * x + 2.0 * p2 * y
                D[:, 1, 1] = radial + 2.0 * y * y * d_radial + 6.0 * p1 * y + 2.0 * p2 * x
            else:
                D[:, 0, 0] = 1.0
                D[:, 1, 1] = 1.0

            # d(x, y) / dX
            N = np.zeros((X.shape[0], 2, 3))
            N[:, 0, 0] = z_inv
            N[:, 0, 2] = -x * z_inv
            N[:, 1, 1] = z_inv
            N[:, 1, 2] = -y * z_inv

            F = np.array([[self.fx, self.skew],
                          [0.0, self.fy]])
            J = np.einsum('ab,mbc,mcd->mad', F, D, N)

        return uv, J

    def __repr__(self) -> str:
        return (f"CameraModel(fx={self.fx}, fy={self.fy}, cx={self.cx}, cy={self.cy}, "
                f"skew={self.skew}, radial={self.radial_distortion.tolist()}, "
                f"tangential={self.tangential_distortion.tolist()})")

"""
Rotation conversions used at the boundary of the optimizer.

The optimizer keeps every pose as an axis-angle vector plus a translation.
Rotation matrices only appear when poses enter or leave a run, and inside the
evaluator. Quaternions follow the [x, y, z, w] layout.
"""

import numpy as np


# quaternion: [x, y, z, w]

def rotation_matrix_to_quaternion(R: np.ndarray) -> np.ndarray:
    """
    Convert rotation matrix to quaternion.

    Args:
        R: 3x3 rotation matrix

    Returns:
        Quaternion as [x, y, z, w] with w >= 0
    """
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError("R must be a 3x3 matrix")

    # Method from http://www.euclideanspace.com/maths/geometry/rotations/conversions/matrixToQuaternion/
    trace = np.trace(R)

    if trace > 0:
        S = np.sqrt(trace + 1.0) * 2  # S = 4 * qw
        w = 0.25 * S
        x = (R[2, 1] - R[1, 2]) / S
        y = (R[0, 2] - R[2, 0]) / S
        z = (R[1, 0] - R[0, 1]) / S
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        S = np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2]) * 2  # S = 4 * qx
        w = (R[2, 1] - R[1, 2]) / S
        x = 0.25 * S
        y = (R[0, 1] + R[1, 0]) / S
        z = (R[0, 2] + R[2, 0]) / S
    elif R[1, 1] > R[2, 2]:
        S = np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2]) * 2  # S = 4 * qy
        w = (R[0, 2] - R[2, 0]) / S
        x = (R[0, 1] + R[1, 0]) / S
        y = 0.25 * S
        z = (R[1, 2] + R[2, 1]) / S
    else:
        S = np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1]) * 2  # S = 4 * qz
        w = (R[1, 0] - R[0, 1]) / S
        x = (R[0, 2] + R[2, 0]) / S
        y = (R[1, 2] + R[2, 1]) / S
        z = 0.25 * S

    q = np.array([x, y, z, w])
    if w < 0:
        q = -q
    return q / np.linalg.norm(q)


def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion to rotation matrix.

    Args:
        q: Quaternion as [x, y, z, w], need not be normalized

    Returns:
        3x3 rotation matrix
    """
    if len(q) != 4:
        raise ValueError("q must be a 4-vector [x, y, z, w]")

    x, y, z, w = np.asarray(q, dtype=np.float64)

    norm = np.sqrt(x*x + y*y + z*z + w*w)
    if norm > 0:
        x, y, z, w = x/norm, y/norm, z/norm, w/norm

    R = np.array([
        [1 - 2*y*y - 2*z*z, 2*x*y - 2*z*w, 2*x*z + 2*y*w],
        [2*x*y + 2*z*w, 1 - 2*x*x - 2*z*z, 2*y*z - 2*x*w],
        [2*x*z - 2*y*w, 2*y*z + 2*x*w, 1 - 2*x*x - 2*y*y]
    ])

    return R


def quaternion_to_angle_axis(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion to angle-axis representation.

    Args:
        q: Quaternion as [x, y, z, w]

    Returns:
        Angle-axis as [x, y, z] where magnitude is the angle in radians, in [0, pi]
    """
    if len(q) != 4:
        raise ValueError("q must be a 4-vector [x, y, z, w]")

    q = np.asarray(q, dtype=np.float64)
    norm = np.linalg.norm(q)
    if norm > 0:
        q = q / norm
    # q and -q are the same rotation; pick the one with the shorter angle
    if q[3] < 0:
        q = -q

    xyz = q[:3]
    w = q[3]
    sin_half_angle = np.linalg.norm(xyz)

    if sin_half_angle < 1e-12:
        # first order: angle * axis ~ 2 * xyz / w
        return 2.0 * xyz / w

    angle = 2.0 * np.arctan2(sin_half_angle, w)
    return xyz * (angle / sin_half_angle)


def angle_axis_to_quaternion(angle_axis: np.ndarray) -> np.ndarray:
    """
    Convert angle-axis representation to quaternion.

    Args:
        angle_axis: Angle-axis as [x, y, z] where magnitude is the angle in radians

    Returns:
        Quaternion as [x, y, z, w]
    """
    if len(angle_axis) != 3:
        raise ValueError("angle_axis must be a 3-vector [x, y, z]")

    angle_axis = np.asarray(angle_axis, dtype=np.float64)
    angle = np.linalg.norm(angle_axis)

    if angle < 1e-12:
        q = np.array([0.5 * angle_axis[0], 0.5 * angle_axis[1], 0.5 * angle_axis[2], 1.0])
        return q / np.linalg.norm(q)

    half_angle = angle / 2.0
    axis = angle_axis / angle

    w = np.cos(half_angle)
    xyz = np.sin(half_angle) * axis

    return np.array([xyz[0], xyz[1], xyz[2], w])


def rotation_matrix_to_angle_axis(R: np.ndarray) -> np.ndarray:
    """
    Convert rotation matrix to angle-axis representation.
    """
    q = rotation_matrix_to_quaternion(R)
    return quaternion_to_angle_axis(q)


def angle_axis_to_rotation_matrix(angle_axis: np.ndarray) -> np.ndarray:
    """
    Convert angle-axis representation to rotation matrix.
    """
    q = angle_axis_to_quaternion(angle_axis)
    return quaternion_to_rotation_matrix(q)


def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """
    Convert a vector to a skew-symmetric matrix.
    """
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ])


def batch_skew_symmetric(v: np.ndarray) -> np.ndarray:
    """
    Skew-symmetric matrices for an (M, 3) array of vectors, shape (M, 3, 3).
    """
    v = np.asarray(v, dtype=np.float64).reshape(-1, 3)
    S = np.zeros((v.shape[0], 3, 3))
    S[:, 0, 1] = -v[:, 2]
    S[:, 0, 2] = v[:, 1]
    S[:, 1, 0] = v[:, 2]
    S[:, 1, 2] = -v[:, 0]
    S[:, 2, 0] = -v[:, 1]
    S[:, 2, 1] = v[:, 0]
    return S


def so3_right_jacobian(phi):
    """
    Right Jacobian of SO(3): exp(phi + d) ~ exp(phi) exp(J_r(phi) d).
    """
    phi = np.asarray(phi, dtype=np.float64)
    theta = np.linalg.norm(phi)
    I = np.eye(3)

    if theta < 1e-5:
        return I - 0.5 * skew_symmetric(phi) + (1.0 / 6.0) * skew_symmetric(phi) @ skew_symmetric(phi)
    else:
        K = skew_symmetric(phi)
        theta2 = theta**2
        theta3 = theta**3
        A = (1 - np.cos(theta)) / theta2
        B = (theta - np.sin(theta)) / theta3
        return I - A * K + B * K @ K

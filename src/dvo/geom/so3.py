# src/dvo/geom/so3.py
"""
Lie group of 3D rotations.

Rotations are unit quaternions stored as np.ndarray [x, y, z, w],
the same order as the TUM trajectory files.

References:
  - Sophus: https://github.com/strasdat/Sophus
  - E. Eade, "Lie Groups for 2D and 3D Transformations"
  - C. Hertzberg et al., "Integrating Generic Sensor Fusion Algorithms with
    Sound State Representation through Encapsulation of Manifolds", 2011
"""
from __future__ import annotations

import numpy as np

EPSILON = 1e-2
_1_8 = 0.125
_1_48 = 1.0 / 48.0


def hat(w: np.ndarray) -> np.ndarray:
    """so3 parameterization (3,) -> skew-symmetric matrix (3,3)."""
    w1, w2, w3 = w
    return np.array([[0.0, -w3, w2],
                     [w3, 0.0, -w1],
                     [-w2, w1, 0.0]], dtype=np.float64)


def hat_2(w: np.ndarray) -> np.ndarray:
    """hat(w) @ hat(w), without the matrix product. Result is symmetric."""
    w1, w2, w3 = w
    w11 = w1 * w1
    w12 = w1 * w2
    w13 = w1 * w3
    w22 = w2 * w2
    w23 = w2 * w3
    w33 = w3 * w3
    return np.array([[-w22 - w33, w12, w13],
                     [w12, -w11 - w33, w23],
                     [w13, w23, -w11 - w22]], dtype=np.float64)


def vee(mat: np.ndarray) -> np.ndarray:
    # Does not check that mat is skew-symmetric.
    return np.array([mat[2, 1], mat[0, 2], mat[1, 0]], dtype=np.float64)


def exp(w: np.ndarray) -> tuple[np.ndarray, float]:
    """
    Exponential map so3 -> SO3.

    Returns:
        q: unit quaternion [x, y, z, w]
        theta: rotation angle, norm of w
    """
    w = np.asarray(w, dtype=np.float64)
    theta_2 = float(w @ w)
    theta = float(np.sqrt(theta_2))
    if theta < EPSILON:
        real_factor = 1.0 - _1_8 * theta_2
        imag_factor = 0.5 - _1_48 * theta_2
    else:
        half_theta = 0.5 * theta
        real_factor = np.cos(half_theta)
        imag_factor = np.sin(half_theta) / theta
    q = np.empty(4, dtype=np.float64)
    q[:3] = imag_factor * w
    q[3] = real_factor
    return q / np.linalg.norm(q), theta


def log(q: np.ndarray) -> tuple[np.ndarray, float]:
    """
    Logarithm map SO3 -> so3, inverse of exp.

    Returns:
        w: rotation vector (3,), the shortest one
        theta: rotation angle in [0, pi], norm of w
    """
    q = np.asarray(q, dtype=np.float64)
    # q and -q are the same rotation; work on the real >= 0 hemisphere.
    if q[3] < 0.0:
        q = -q
    imag = q[:3]
    imag_norm_2 = float(imag @ imag)
    imag_norm = float(np.sqrt(imag_norm_2))
    real = float(q[3])

    if imag_norm < EPSILON:
        # 2 * atan(n / r) / n, Taylor expanded around n = 0
        real_2 = real * real
        atan_coef = 2.0 / real - (2.0 / 3.0) * imag_norm_2 / (real * real_2)
        theta = atan_coef * imag_norm
        tangent = atan_coef * imag
    elif abs(real) < EPSILON:
        theta = np.pi if real >= 0.0 else -np.pi
        tangent = (theta / imag_norm) * imag
    else:
        theta = 2.0 * np.arctan2(imag_norm, real)
        tangent = (theta / imag_norm) * imag
    return tangent, float(abs(theta))


def quat_to_rotmat(q: np.ndarray) -> np.ndarray:
    """Unit quaternion [x, y, z, w] -> rotation matrix (3,3)."""
    x, y, z, w = np.asarray(q, dtype=np.float64) / np.linalg.norm(q)
    v = np.array([x, y, z])
    # R = I + 2 w [v]x + 2 [v]x^2
    return np.eye(3) + 2.0 * w * hat(v) + 2.0 * hat_2(v)


def rotmat_to_quat(R: np.ndarray) -> np.ndarray:
    # Returns quaternion [x,y,z,w] from rotation matrix.
    m = R.astype(np.float64)
    trace = float(np.trace(m))
    if trace > 0.0:
        s = np.sqrt(trace + 1.0) * 2.0
        qw = 0.25 * s
        qx = (m[2, 1] - m[1, 2]) / s
        qy = (m[0, 2] - m[2, 0]) / s
        qz = (m[1, 0] - m[0, 1]) / s
    else:
        if m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
            s = np.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2]) * 2.0
            qw = (m[2, 1] - m[1, 2]) / s
            qx = 0.25 * s
            qy = (m[0, 1] + m[1, 0]) / s
            qz = (m[0, 2] + m[2, 0]) / s
        elif m[1, 1] > m[2, 2]:
            s = np.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2]) * 2.0
            qw = (m[0, 2] - m[2, 0]) / s
            qx = (m[0, 1] + m[1, 0]) / s
            qy = 0.25 * s
            qz = (m[1, 2] + m[2, 1]) / s
        else:
            s = np.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1]) * 2.0
            qw = (m[1, 0] - m[0, 1]) / s
            qx = (m[0, 2] + m[2, 0]) / s
            qy = (m[1, 2] + m[2, 1]) / s
            qz = 0.25 * s

    q = np.array([qx, qy, qz, qw], dtype=np.float64)
    return q / np.linalg.norm(q)

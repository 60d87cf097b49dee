import numpy as np

from . import so3

def Rt_to_T(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3,:3] = R
    T[:3, 3] = t.reshape(3)
    return T

def inv_T(T: np.ndarray) -> np.ndarray:
    R = T[:3,:3]; t = T[:3,3]
    Ti = np.eye(4)
    Ti[:3,:3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti

def quat_t_to_T(q: np.ndarray, t: np.ndarray) -> np.ndarray:
    return Rt_to_T(so3.quat_to_rotmat(q), np.asarray(t, dtype=np.float64))

def T_to_quat_t(T: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    # (q [x,y,z,w], t)
    return so3.rotmat_to_quat(T[:3, :3]), T[:3, 3].copy()

def transform(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply T to (3,) or (N,3) points."""
    return np.asarray(points, dtype=np.float64) @ T[:3, :3].T + T[:3, 3]

def _left_jacobian(w: np.ndarray, theta: float) -> np.ndarray:
    # V = I + (1 - cos t)/t^2 [w]x + (t - sin t)/t^3 [w]x^2
    if theta < so3.EPSILON:
        theta_2 = theta * theta
        a = 0.5 - theta_2 / 24.0
        b = 1.0 / 6.0 - theta_2 / 120.0
    else:
        a = (1.0 - np.cos(theta)) / (theta * theta)
        b = (theta - np.sin(theta)) / (theta * theta * theta)
    return np.eye(3) + a * so3.hat(w) + b * so3.hat_2(w)

def exp(xi: np.ndarray) -> np.ndarray:
    """
    se3 -> SE3 as a 4x4 matrix.
    xi: (6,) = [v(3), w(3)], translation part first.
    """
    xi = np.asarray(xi, dtype=np.float64)
    v = xi[:3]; w = xi[3:]
    q, theta = so3.exp(w)
    return Rt_to_T(so3.quat_to_rotmat(q), _left_jacobian(w, theta) @ v)

def log(T: np.ndarray) -> np.ndarray:
    """SE3 -> se3, inverse of exp. Returns (6,) = [v, w]."""
    w, theta = so3.log(so3.rotmat_to_quat(T[:3, :3]))
    v = np.linalg.solve(_left_jacobian(w, theta), T[:3, 3])
    return np.concatenate([v, w])

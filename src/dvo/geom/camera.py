# src/dvo/geom/camera.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from .se3 import quat_t_to_T, T_to_quat_t, transform, inv_T


@dataclass(frozen=True)
class Intrinsics:
    """
    Pinhole intrinsics.

    K = [[f*sx, skew, cx],
         [0,    f*sy, cy],
         [0,    0,    1 ]]

    Pixel coordinates are (x, y) = (column, row).
    """
    principal_point: Tuple[float, float]
    focal_length: float
    scaling: Tuple[float, float]
    skew: float = 0.0

    def matrix(self) -> np.ndarray:
        cx, cy = self.principal_point
        sx, sy = self.scaling
        f = self.focal_length
        return np.array([[f * sx, self.skew, cx],
                         [0.0, f * sy, cy],
                         [0.0, 0.0, 1.0]], dtype=np.float64)

    def half_res(self) -> "Intrinsics":
        # Pixel centers: pixel i at level l+1 covers pixels 2i and 2i+1 at level l.
        cx, cy = self.principal_point
        sx, sy = self.scaling
        return Intrinsics(
            principal_point=((cx + 0.5) / 2.0 - 0.5, (cy + 0.5) / 2.0 - 0.5),
            focal_length=self.focal_length,
            scaling=(sx / 2.0, sy / 2.0),
            skew=self.skew,
        )

    def multi_res(self, n: int) -> List["Intrinsics"]:
        if n < 1:
            raise ValueError(f"multi_res requires at least one level, got {n}")
        levels = [self]
        for _ in range(n - 1):
            levels.append(levels[-1].half_res())
        return levels

    def project(self, points: np.ndarray) -> np.ndarray:
        """Camera frame points (3,) or (N,3) -> homogeneous pixels, same shape."""
        return np.asarray(points, dtype=np.float64) @ self.matrix().T

    def back_project(self, pixels: np.ndarray, depth) -> np.ndarray:
        """
        Pixels (2,) or (N,2) at depth z along the optical axis
        -> camera frame points (3,) or (N,3).
        """
        cx, cy = self.principal_point
        sx, sy = self.scaling
        f = self.focal_length
        pixels = np.asarray(pixels, dtype=np.float64)
        z = np.asarray(depth, dtype=np.float64)
        y = (pixels[..., 1] - cy) * z / (f * sy)
        x = ((pixels[..., 0] - cx) * z - self.skew * y) / (f * sx)
        return np.stack(np.broadcast_arrays(x, y, z), axis=-1)


@dataclass(frozen=True)
class Extrinsics:
    """Camera pose in world coordinates (camera -> world)."""
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0]))  # [x,y,z,w]

    @staticmethod
    def identity() -> "Extrinsics":
        return Extrinsics()

    @staticmethod
    def from_matrix(T_w_c: np.ndarray) -> "Extrinsics":
        q, t = T_to_quat_t(T_w_c)
        return Extrinsics(translation=t, rotation=q)

    def matrix(self) -> np.ndarray:
        return quat_t_to_T(self.rotation, self.translation)

    def project(self, points_w: np.ndarray) -> np.ndarray:
        """World -> camera frame."""
        return transform(inv_T(self.matrix()), points_w)

    def back_project(self, points_c: np.ndarray) -> np.ndarray:
        """Camera frame -> world."""
        return transform(self.matrix(), points_c)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Extrinsics):
            return NotImplemented
        same_rot = np.allclose(self.rotation, other.rotation) or np.allclose(self.rotation, -other.rotation)
        return bool(np.allclose(self.translation, other.translation) and same_rot)


@dataclass(frozen=True)
class Camera:
    intrinsics: Intrinsics
    extrinsics: Extrinsics = field(default_factory=Extrinsics.identity)

    def project(self, points_w: np.ndarray) -> np.ndarray:
        """World points -> homogeneous pixels."""
        return self.intrinsics.project(self.extrinsics.project(points_w))

    def back_project(self, pixels: np.ndarray, depth) -> np.ndarray:
        """Pixels at depth -> world points."""
        return self.extrinsics.back_project(self.intrinsics.back_project(pixels, depth))

    def multi_res(self, n: int) -> List["Camera"]:
        return [Camera(intr, self.extrinsics) for intr in self.intrinsics.multi_res(n)]
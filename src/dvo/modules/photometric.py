# src/dvo/modules/photometric.py
"""
Inverse compositional photometric alignment.

The pose increment T_cur_ref maps points from the reference camera frame
to the current camera frame. For each candidate x of the reference:
    r(x) = I_cur(pi(T_cur_ref * p(x))) - I_ref(x)
The Jacobian of I_ref(pi(exp(xi) * p(x))) w.r.t. xi = [v, w] is evaluated
once at xi = 0 on the reference, and each Gauss-Newton step is composed as
    T_cur_ref <- T_cur_ref * exp(xi)^-1
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..geom import se3
from ..geom.camera import Intrinsics
from ..system.proposal import Evidence, Proposal
from . import inverse_depth


@dataclass(frozen=True)
class LevelReference:
    """Reference data needed to align one pyramid level."""
    level: int
    intrinsics: Intrinsics
    pixels: np.ndarray        # (N,2) x=column, y=row
    points: np.ndarray        # (N,3) reference camera frame
    intensities: np.ndarray   # (N,)
    weights: np.ndarray       # (N,) normalized inverse variances
    jacobians: np.ndarray     # (N,6) d r / d [v, w]

    def __len__(self) -> int:
        return int(self.points.shape[0])


@dataclass
class AlignParams:
    max_iterations: int = 50
    convergence_tol: float = 1e-4    # relative energy decrease
    min_step: float = 1e-8
    huber_delta: Optional[float] = 10.0
    damping: float = 1e-3
    min_residuals: int = 12


@dataclass
class LevelStats:
    level: int
    num_candidates: int
    num_residuals: int = 0
    iterations: int = 0
    energy: Optional[float] = None
    mean_abs_residual: Optional[float] = None
    converged: bool = False
    reason: str = ""

    def as_dict(self) -> dict:
        return {
            "level": self.level,
            "num_candidates": self.num_candidates,
            "num_residuals": self.num_residuals,
            "iterations": self.iterations,
            "energy": self.energy,
            "mean_abs_residual": self.mean_abs_residual,
            "converged": self.converged,
            "reason": self.reason,
        }


def _readonly(a: np.ndarray) -> np.ndarray:
    a.setflags(write=False)
    return a


# Warping and sampling #################################################

def in_image_bounds(x: np.ndarray, y: np.ndarray, shape: Tuple[int, int]) -> np.ndarray:
    """True where (x, y) can be bilinearly interpolated in an image of given shape."""
    h, w = shape[:2]
    with np.errstate(invalid="ignore"):
        return (x >= 0.0) & (y >= 0.0) & (x < w - 1) & (y < h - 1)


def bilinear(img: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Bilinear interpolation of img at (x, y). Every point must be in bounds."""
    if x.size == 0:
        return np.zeros(0, dtype=np.float64)
    if not np.all(in_image_bounds(x, y, img.shape)):
        raise ValueError("bilinear: sample points out of image bounds")
    u = np.floor(x).astype(np.intp)
    v = np.floor(y).astype(np.intp)
    a = x - u
    b = y - v
    im = img.astype(np.float64, copy=False)
    return ((1.0 - a) * (1.0 - b) * im[v, u]
            + (1.0 - a) * b * im[v + 1, u]
            + a * (1.0 - b) * im[v, u + 1]
            + a * b * im[v + 1, u + 1])


def warp(points: np.ndarray, T_cur_ref: np.ndarray, intrinsics: Intrinsics) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Returns:
        x, y: pixel coordinates in the current frame (nan behind the camera)
        in_front: (N,) bool
    """
    p = se3.transform(T_cur_ref, points)
    uvw = intrinsics.project(p)
    in_front = uvw[:, 2] > 1e-9
    x = np.full(len(points), np.nan)
    y = np.full(len(points), np.nan)
    x[in_front] = uvw[in_front, 0] / uvw[in_front, 2]
    y[in_front] = uvw[in_front, 1] / uvw[in_front, 2]
    return x, y, in_front


def warp_jacobians(points: np.ndarray, grad: np.ndarray, intrinsics: Intrinsics) -> np.ndarray:
    """
    (N,6) Jacobians of I(pi(exp(xi) * p)) at xi = 0, with grad = dI/d(x, y).
    d(exp(xi) p)/d xi = [Id | -hat(p)]
    """
    K = intrinsics.matrix()
    fx, s, fy = K[0, 0], K[0, 1], K[1, 1]
    X, Y, Z = points[:, 0], points[:, 1], points[:, 2]
    inv_z = 1.0 / Z
    inv_z_2 = inv_z * inv_z
    zeros = np.zeros_like(Z)
    du = np.stack([fx * inv_z, s * inv_z, -(fx * X + s * Y) * inv_z_2], axis=1)
    dv = np.stack([zeros, fy * inv_z, -fy * Y * inv_z_2], axis=1)
    J_point = grad[:, 0:1] * du + grad[:, 1:2] * dv
    # J_point @ -hat(p) == cross(p, J_point)
    return np.hstack([J_point, np.cross(points, J_point)])


def precompute_level(
    level: int,
    intrinsics: Intrinsics,
    img: np.ndarray,
    grad_x: np.ndarray,
    grad_y: np.ndarray,
    idepth_mat: np.ndarray,
) -> LevelReference:
    """
    Build the alignment data of one level from the candidates
    that have a valid inverse depth.

    grad_x, grad_y: block gradients (per finer-level pixel) aligned with img.
    """
    if not (img.shape == grad_x.shape == grad_y.shape == idepth_mat.shape):
        raise ValueError(
            f"Level {level} shape mismatch: img {img.shape}, gradients {grad_x.shape}, "
            f"inverse depth {idepth_mat.shape}"
        )
    idepth, variance, valid = inverse_depth.to_arrays(idepth_mat)
    valid &= idepth > 0.0
    rows, cols = np.nonzero(valid)
    pixels = np.stack([cols, rows], axis=1).astype(np.float64)
    points = intrinsics.back_project(pixels, 1.0 / idepth[rows, cols]).reshape(-1, 3)
    # block gradients are per finer-level pixel
    grad = 2.0 * np.stack([grad_x[rows, cols], grad_y[rows, cols]], axis=1).astype(np.float64)
    weights = 1.0 / variance[rows, cols]
    if weights.size:
        weights = weights / weights.mean()
    return LevelReference(
        level=level,
        intrinsics=intrinsics,
        pixels=_readonly(pixels),
        points=_readonly(points),
        intensities=_readonly(img[rows, cols].astype(np.float64)),
        weights=_readonly(weights),
        jacobians=_readonly(warp_jacobians(points, grad, intrinsics).reshape(-1, 6)),
    )


# Optimization ########################################################

def residuals(ref: LevelReference, img: np.ndarray, T_cur_ref: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Returns:
        r: (N,) photometric residuals, nan where not visible
        visible: (N,) bool, candidates warped inside the current image
    """
    x, y, in_front = warp(ref.points, T_cur_ref, ref.intrinsics)
    visible = in_front & in_image_bounds(x, y, img.shape)
    r = np.full(len(ref), np.nan)
    r[visible] = bilinear(img, x[visible], y[visible]) - ref.intensities[visible]
    return r, visible


def huber_weights(r: np.ndarray, delta: Optional[float]) -> np.ndarray:
    if delta is None:
        return np.ones_like(r)
    a = np.abs(r)
    return np.where(a <= delta, 1.0, delta / np.maximum(a, 1e-12))


def energy(r: np.ndarray, weights: np.ndarray, delta: Optional[float]) -> float:
    """Weighted mean of the (Huber) cost of the residuals."""
    if delta is None:
        cost = 0.5 * r * r
    else:
        a = np.abs(r)
        cost = np.where(a <= delta, 0.5 * r * r, delta * (a - 0.5 * delta))
    return float(np.sum(weights * cost) / np.sum(weights))


def align_level(
    ref: LevelReference,
    img: np.ndarray,
    T_init: np.ndarray,
    params: AlignParams,
    verbose: bool = False,
) -> Tuple[np.ndarray, LevelStats]:
    """
    Gauss-Newton refinement of T_cur_ref on one level.
    A step increasing the energy is rejected and ends the level.
    """
    stats = LevelStats(level=ref.level, num_candidates=len(ref))
    T = T_init.copy()
    r, visible = residuals(ref, img, T)
    if int(visible.sum()) < params.min_residuals:
        stats.num_residuals = int(visible.sum())
        stats.reason = "TOO_FEW_RESIDUALS"
        return T, stats

    w = ref.weights[visible]
    e = energy(r[visible], w, params.huber_delta)

    for it in range(params.max_iterations):
        J = ref.jacobians[visible]
        rv = r[visible]
        W = w * huber_weights(rv, params.huber_delta)
        JW = J * W[:, None]
        H = JW.T @ J + params.damping * np.eye(6)
        g = JW.T @ rv
        try:
            delta = np.linalg.solve(H, g)
        except np.linalg.LinAlgError:
            stats.reason = "SINGULAR"
            break
        stats.iterations = it + 1

        T_new = T @ se3.inv_T(se3.exp(delta))
        r_new, visible_new = residuals(ref, img, T_new)
        n_new = int(visible_new.sum())
        if n_new < params.min_residuals:
            stats.reason = "TOO_FEW_RESIDUALS"
            break
        w_new = ref.weights[visible_new]
        e_new = energy(r_new[visible_new], w_new, params.huber_delta)

        if verbose:
            print(f"[GN lvl {ref.level} it {it}] residuals={n_new}  energy={e_new:.3f}  |delta|={np.linalg.norm(delta):.3e}")

        if e_new > e:
            stats.reason = "ENERGY_INCREASE"
            stats.converged = True
            break

        improvement = e - e_new
        T, r, visible, w, e = T_new, r_new, visible_new, w_new, e_new
        if improvement <= params.convergence_tol * e or float(np.linalg.norm(delta)) < params.min_step:
            stats.reason = "CONVERGED"
            stats.converged = True
            break
    else:
        stats.reason = "MAX_ITERATIONS"

    stats.num_residuals = int(visible.sum())
    stats.energy = e
    stats.mean_abs_residual = float(np.mean(np.abs(r[visible])))
    return T, stats


def align(
    levels: Sequence[LevelReference],
    multires_img: List[np.ndarray],
    T_init: np.ndarray,
    params: AlignParams,
    verbose: bool = False,
) -> Proposal:
    """
    Coarse to fine alignment of the current image pyramid on the reference levels.

    Args:
        levels: reference data, one per aligned level, in any order.
        multires_img: current image pyramid (level 0 = full resolution).
        T_init: initial T_cur_ref (4x4).

    Returns:
        Proposal "photometric" with the estimated T_cur_prev.
        valid=False if no level had enough residuals; T_cur_prev is then T_init.
    """
    T = np.asarray(T_init, dtype=np.float64).copy()
    ev = Evidence()
    aligned_any = False
    all_converged = True

    for ref in sorted(levels, key=lambda lvl: lvl.level, reverse=True):
        if ref.level >= len(multires_img):
            continue
        img = multires_img[ref.level]
        if len(ref) < params.min_residuals:
            stats = LevelStats(level=ref.level, num_candidates=len(ref), reason="TOO_FEW_CANDIDATES")
            ev.levels.append(stats.as_dict())
            continue
        T, stats = align_level(ref, img, T, params, verbose=verbose)
        ev.levels.append(stats.as_dict())
        if stats.energy is None:
            continue
        aligned_any = True
        all_converged = all_converged and stats.converged
        ev.num_residuals = stats.num_residuals
        ev.visible_ratio = stats.num_residuals / float(stats.num_candidates)
        ev.energy = stats.energy
        ev.mean_abs_residual = stats.mean_abs_residual

    if not aligned_any:
        return Proposal("photometric", T, ev, valid=False, reason="REJECT_PHOTO_NO_LEVEL")
    reason = "PHOTO_OK" if all_converged else "PHOTO_NOT_CONVERGED"
    return Proposal("photometric", T, ev, valid=True, reason=reason)

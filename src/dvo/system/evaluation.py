# src/dvo/system/evaluation.py
"""
Offline evaluation helpers:
  - quality of inverse depth fusion strategies against ground truth depth,
  - photometric reprojection error of a reference frame into another camera.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..geom.camera import Camera
from ..modules import candidates, inverse_depth, multires
from ..modules.photometric import bilinear, in_image_bounds

StrategyEval = Tuple[float, Optional[float]]  # (ratio of valid estimates, rmse)


def evaluate_idepth(idepth_map: np.ndarray, gt: np.ndarray) -> StrategyEval:
    """
    Compare an inverse depth matrix with its ground truth.

    Returns:
        ratio: valid estimates (with a valid ground truth) over number of pixels
        rmse: root mean squared inverse depth error over those, None if there are none
    """
    if idepth_map.shape != gt.shape:
        raise ValueError(f"Shape mismatch: {idepth_map.shape} vs ground truth {gt.shape}")
    idepth, _, valid = inverse_depth.to_arrays(idepth_map)
    idepth_gt, _, valid_gt = inverse_depth.to_arrays(gt)
    both = valid & valid_gt
    count = int(both.sum())
    if count == 0:
        return 0.0, None
    err = idepth[both] - idepth_gt[both]
    return count / float(gt.size), float(np.sqrt(np.mean(err * err)))


def evaluate_strategy_on(
    depth_map: np.ndarray,
    sparse_candidates: np.ndarray,
    strategy: inverse_depth.FusionStrategy,
    nb_levels: int = 6,
    depth_scale: float = 5000.0,
    idepth_variance: float = 1e-4,
) -> StrategyEval:
    """
    Fuse candidate inverse depths up to the coarsest level and compare them
    with the ground truth depth averaged at that level.

    sparse_candidates has the half resolution of depth_map,
    which emulates points of a previous keyframe re-projected in a new one.
    """
    multires_depth = multires.mean_pyramid_u16(nb_levels, depth_map)
    if len(multires_depth) < 2:
        raise ValueError("Depth map too small to evaluate a strategy")
    idepth_candidates = inverse_depth.from_depth_candidates(
        multires_depth[1], sparse_candidates, depth_scale, idepth_variance
    )
    multires_idepth = inverse_depth.pyramid(idepth_candidates, len(multires_depth) - 1, strategy)
    gt = inverse_depth.from_depth_map(multires_depth[len(multires_idepth)], depth_scale, idepth_variance)
    return evaluate_idepth(multires_idepth[-1], gt)


def evaluate_all_strategies_for(
    img: np.ndarray,
    depth_map: np.ndarray,
    strategies: Sequence[inverse_depth.FusionStrategy],
    nb_levels: int = 6,
    candidates_threshold: float = 7.0,
    depth_scale: float = 5000.0,
    idepth_variance: float = 1e-4,
) -> Dict[str, StrategyEval]:
    multires_img = multires.mean_pyramid(nb_levels, img)
    multires_candidates = candidates.select(
        multires.gradients_squared_norm(multires_img), candidates_threshold
    )
    if not multires_candidates:
        raise ValueError("Image too small to select candidates")
    higher_res_candidates = multires_candidates[0]
    return {
        s.name: evaluate_strategy_on(depth_map, higher_res_candidates, s, nb_levels, depth_scale, idepth_variance)
        for s in strategies
    }


def aggregate(evaluations: List[Dict[str, StrategyEval]]) -> Dict[str, StrategyEval]:
    """
    Mean over frames of the ratio, and ratio weighted mean of the rmse.
    Frames without any valid estimate (rmse None) are left out of the rmse mean.
    """
    out = {}
    if not evaluations:
        return out
    for name in evaluations[0]:
        ratios = [ev[name][0] for ev in evaluations]
        with_rmse = [ev[name] for ev in evaluations if ev[name][1] is not None]
        total = sum(r for r, _ in with_rmse)
        rmse = sum(r * e for r, e in with_rmse) / total if total > 0 else None
        out[name] = (float(np.mean(ratios)), rmse)
    return out


def reprojection_error(
    camera_ref: Camera,
    camera_new: Camera,
    idepth_ref: np.ndarray,
    img_ref: np.ndarray,
    img_new: np.ndarray,
) -> Tuple[Optional[float], float, np.ndarray]:
    """
    Warp the valid inverse depths of a reference level into another camera.

    Returns:
        error: inverse variance weighted mean absolute intensity difference
               between reference pixels and their bilinear reprojection (None if nothing visible)
        total_weight: sum of the weights used
        projected: inverse depth matrix of the reprojected points (nearest pixel)
    """
    if not (idepth_ref.shape == img_ref.shape == img_new.shape):
        raise ValueError(
            f"Shape mismatch: idepth {idepth_ref.shape}, reference {img_ref.shape}, new {img_new.shape}"
        )
    idepth, variance, valid = inverse_depth.to_arrays(idepth_ref)
    valid &= idepth > 0.0
    rows, cols = np.nonzero(valid)
    pixels = np.stack([cols, rows], axis=1).astype(np.float64)
    points_w = camera_ref.back_project(pixels, 1.0 / idepth[rows, cols]).reshape(-1, 3)
    uvw = camera_new.project(points_w)

    in_front = uvw[:, 2] > 1e-9
    x = np.full(len(uvw), np.nan)
    y = np.full(len(uvw), np.nan)
    x[in_front] = uvw[in_front, 0] / uvw[in_front, 2]
    y[in_front] = uvw[in_front, 1] / uvw[in_front, 2]
    visible = in_front & in_image_bounds(x, y, img_new.shape)

    projected = np.full(idepth_ref.shape, inverse_depth.Unknown, dtype=object)
    weights = 1.0 / variance[rows[visible], cols[visible]]
    total_weight = float(weights.sum())
    if total_weight == 0.0:
        return None, 0.0, projected

    reprojected = bilinear(img_new, x[visible], y[visible])
    original = img_ref[rows[visible], cols[visible]].astype(np.float64)
    error = float(np.sum(weights * np.abs(reprojected - original)) / total_weight)

    # visible points round to x <= w - 1 and y <= h - 1
    pr = np.round(y[visible]).astype(np.intp)
    pc = np.round(x[visible]).astype(np.intp)
    h, w = img_new.shape[:2]
    assert np.all((pr >= 0) & (pr < h) & (pc >= 0) & (pc < w))
    projected[pr, pc] = idepth_ref[rows[visible], cols[visible]]
    return error, total_weight, projected

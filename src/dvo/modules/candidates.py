# src/dvo/modules/candidates.py
from __future__ import annotations

from typing import List

import numpy as np


def select(multires_gradients_squared_norm: List[np.ndarray], threshold: float) -> List[np.ndarray]:
    """
    Select candidate points for photometric optimization.

    A pixel is a candidate at a given level when its gradient norm is
    strictly above threshold. Levels are independent from each other,
    and there is no spatial suppression.

    Args:
        multires_gradients_squared_norm: squared gradient norms, one matrix per level.
        threshold: minimum gradient norm (same unit as the gradients, not squared).

    Returns:
        One boolean matrix per level, with the shape of the gradient level.
    """
    if threshold < 0:
        raise ValueError(f"Candidates threshold must be >= 0, got {threshold}")
    threshold_2 = float(threshold) * float(threshold)
    selected = []
    for sq_norm in multires_gradients_squared_norm:
        mask = np.asarray(sq_norm, dtype=np.float64) > threshold_2
        mask.setflags(write=False)
        selected.append(mask)
    return selected


def count(multires_candidates: List[np.ndarray]) -> List[int]:
    return [int(m.sum()) for m in multires_candidates]

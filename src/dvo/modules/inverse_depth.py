# src/dvo/modules/inverse_depth.py
"""
Inverse depth observations and their fusion across pyramid levels.

An inverse depth is one of:
  - Unknown: no observation,
  - Discarded: observations present but inconsistent with each other,
  - WithVariance(idepth, variance): a valid estimate.

Inverse depth matrices are numpy object arrays of these values.
"""
from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Type

import numpy as np

from .multires import halve, limited_sequence


class InverseDepth:
    __slots__ = ()


class _Unknown(InverseDepth):
    __slots__ = ()

    def __repr__(self) -> str:
        return "Unknown"


class _Discarded(InverseDepth):
    __slots__ = ()

    def __repr__(self) -> str:
        return "Discarded"


Unknown = _Unknown()
Discarded = _Discarded()


@dataclass(frozen=True)
class WithVariance(InverseDepth):
    idepth: float
    variance: float

    def __post_init__(self):
        if not self.variance > 0.0:
            raise ValueError(f"Inverse depth variance must be positive, got {self.variance}")


Observation = Tuple[float, float]  # (idepth, variance)


def from_depth(depth_scale: float, depth: int, variance: float) -> InverseDepth:
    """Raw scaled depth -> inverse depth. A raw depth of 0 means no depth."""
    if depth == 0:
        return Unknown
    return WithVariance(float(depth_scale) / float(depth), float(variance))


def from_depth_map(depth_map: np.ndarray, depth_scale: float, variance: float) -> np.ndarray:
    depth_map = np.asarray(depth_map)
    if depth_map.ndim != 2:
        raise ValueError(f"Depth map must be 2D, got shape {depth_map.shape}")
    convert = np.frompyfunc(lambda z: from_depth(depth_scale, int(z), variance), 1, 1)
    return convert(depth_map).astype(object)


def from_depth_candidates(depth_map: np.ndarray, mask: np.ndarray, depth_scale: float, variance: float) -> np.ndarray:
    """Inverse depth of the pixels selected by mask, Unknown elsewhere."""
    depth_map = np.asarray(depth_map)
    if depth_map.shape != mask.shape:
        raise ValueError(f"Shape mismatch: depth map {depth_map.shape} vs mask {mask.shape}")
    out = np.full(depth_map.shape, Unknown, dtype=object)
    if mask.any():
        convert = np.frompyfunc(lambda z: from_depth(depth_scale, int(z), variance), 1, 1)
        out[mask] = convert(depth_map[mask])
    return out


def observation(idepth: InverseDepth) -> Optional[Observation]:
    if isinstance(idepth, WithVariance):
        return idepth.idepth, idepth.variance
    return None


def weighted_mean(values: Sequence[Observation]) -> Observation:
    """Inverse variance weighted mean and its variance."""
    sum_w = 0.0
    sum_wd = 0.0
    for d, v in values:
        w = 1.0 / v
        sum_w += w
        sum_wd += w * d
    return sum_wd / sum_w, 1.0 / sum_w


# Fusion strategies ####################################################

class FusionStrategy:
    """
    Merge the valid observations of (up to) four children into one parent.

    Called only with a non-empty list of observations.
    """
    name = "base"

    def __call__(self, values: Sequence[Observation]) -> InverseDepth:
        raise NotImplementedError


class DsoMean(FusionStrategy):
    """
    Weighted mean of all observations, discarded if one observation
    is farther than k standard deviations from that mean.
    """
    name = "dso_mean"

    def __init__(self, k: float = 2.0):
        self.k = float(k)

    def __call__(self, values: Sequence[Observation]) -> InverseDepth:
        if len(values) == 1:
            return WithVariance(*values[0])
        mean, var = weighted_mean(values)
        for d, v in values:
            if abs(d - mean) > self.k * np.sqrt(v):
                return Discarded
        return WithVariance(mean, var)


class StatisticallySimilar(FusionStrategy):
    """
    Weighted mean of the largest subset of pairwise similar observations.
    Two observations are similar if (d1 - d2)^2 <= k^2 * (v1 + v2).
    If no two observations are similar, the result is discarded.
    """
    name = "statistically_similar"

    def __init__(self, k: float = 2.0):
        self.k = float(k)

    def similar(self, o1: Observation, o2: Observation) -> bool:
        (d1, v1), (d2, v2) = o1, o2
        return (d1 - d2) ** 2 <= self.k * self.k * (v1 + v2)

    def __call__(self, values: Sequence[Observation]) -> InverseDepth:
        if len(values) == 1:
            return WithVariance(*values[0])
        for size in range(len(values), 1, -1):
            best: Optional[Observation] = None
            for subset in itertools.combinations(values, size):
                if not all(self.similar(o1, o2) for o1, o2 in itertools.combinations(subset, 2)):
                    continue
                fused = weighted_mean(subset)
                if best is None or fused[1] < best[1]:
                    best = fused
            if best is not None:
                return WithVariance(*best)
        return Discarded


class Random(FusionStrategy):
    """Pick one observation uniformly at random. Baseline for evaluation."""
    name = "random"

    def __init__(self, seed: Optional[int] = None):
        self.rng = np.random.default_rng(seed)

    def __call__(self, values: Sequence[Observation]) -> InverseDepth:
        return WithVariance(*values[int(self.rng.integers(len(values)))])


STRATEGIES: Dict[str, Type[FusionStrategy]] = {
    DsoMean.name: DsoMean,
    StatisticallySimilar.name: StatisticallySimilar,
    Random.name: Random,
}


def make_strategy(name: str, **kwargs) -> FusionStrategy:
    if name not in STRATEGIES:
        raise ValueError(f"Unknown fusion strategy '{name}', expected one of {sorted(STRATEGIES)}")
    return STRATEGIES[name](**kwargs)


def fuse(a: InverseDepth, b: InverseDepth, c: InverseDepth, d: InverseDepth, strategy: FusionStrategy) -> InverseDepth:
    children = (a, b, c, d)
    values = [obs for obs in map(observation, children) if obs is not None]
    if values:
        return strategy(values)
    if any(child is Discarded for child in children):
        return Discarded
    return Unknown


def pyramid(idepth_mat: np.ndarray, max_levels: int, strategy: FusionStrategy) -> List[np.ndarray]:
    """Inverse depth pyramid, each coarser level fused from 2x2 blocks."""
    fuse_block = np.frompyfunc(lambda a, b, c, d: fuse(a, b, c, d, strategy), 4, 1)
    return limited_sequence(
        max_levels,
        idepth_mat,
        lambda m: m,
        lambda m: halve(m, lambda a, b, c, d: np.asarray(fuse_block(a, b, c, d), dtype=object)),
    )


def restrict(idepth_mat: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Keep values where mask is True, Unknown elsewhere."""
    if idepth_mat.shape != mask.shape:
        raise ValueError(f"Shape mismatch: inverse depth {idepth_mat.shape} vs mask {mask.shape}")
    out = np.full(idepth_mat.shape, Unknown, dtype=object)
    out[mask] = idepth_mat[mask]
    return out


def to_arrays(idepth_mat: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Returns:
        idepth: float64 matrix (nan where not valid)
        variance: float64 matrix (nan where not valid)
        valid: bool matrix, True for WithVariance values
    """
    valid = np.frompyfunc(lambda x: isinstance(x, WithVariance), 1, 1)(idepth_mat).astype(bool)
    idepth = np.full(idepth_mat.shape, np.nan)
    variance = np.full(idepth_mat.shape, np.nan)
    if valid.any():
        idepth[valid] = [x.idepth for x in idepth_mat[valid]]
        variance[valid] = [x.variance for x in idepth_mat[valid]]
    return idepth, variance, valid


def visual(idepth_mat: np.ndarray) -> np.ndarray:
    """uint8 image: Unknown -> 0, Discarded -> 255, valid values in [1, 254]."""
    idepth, _, valid = to_arrays(idepth_mat)
    out = np.zeros(idepth_mat.shape, dtype=np.uint8)
    discarded = np.frompyfunc(lambda x: x is Discarded, 1, 1)(idepth_mat).astype(bool)
    out[discarded] = 255
    if valid.any():
        lo = float(idepth[valid].min())
        hi = float(idepth[valid].max())
        scale = (idepth[valid] - lo) / (hi - lo) if hi > lo else np.zeros(int(valid.sum()))
        out[valid] = (1 + np.round(253 * scale)).astype(np.uint8)
    return out

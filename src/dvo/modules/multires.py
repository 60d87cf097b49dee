# src/dvo/modules/multires.py
"""
Helpers to generate multi-resolution data.

Every level of a pyramid is half the resolution of the previous one,
each coarse pixel summarizing a 2x2 block of the finer level.
Since blocks are 2x2, border information is lost for odd resolutions.
"""
from __future__ import annotations

from typing import Callable, List, Optional

import numpy as np

Reduce = Callable[[np.ndarray, np.ndarray, np.ndarray, np.ndarray], np.ndarray]


def halve(mat: np.ndarray, f: Reduce) -> Optional[np.ndarray]:
    """
    Halve the resolution of a matrix by applying f to each 2x2 block.

    With (i, j) a coarse pixel, f receives the four block corners
        a = mat[2i, 2j],   b = mat[2i+1, 2j],
        c = mat[2i, 2j+1], d = mat[2i+1, 2j+1]
    as four (r//2, c//2) matrices and must reduce them element-wise.

    Returns None if one dimension of mat is < 2.
    If one dimension is odd, its last row/column is dropped.
    """
    r, c = mat.shape[:2]
    half_r = r // 2
    half_c = c // 2
    if half_r == 0 or half_c == 0:
        return None
    a = mat[0:2 * half_r:2, 0:2 * half_c:2]
    b = mat[1:2 * half_r:2, 0:2 * half_c:2]
    c_ = mat[0:2 * half_r:2, 1:2 * half_c:2]
    d = mat[1:2 * half_r:2, 1:2 * half_c:2]
    return f(a, b, c_, d)


def sequence(
    mat: np.ndarray,
    init: Callable[[np.ndarray], np.ndarray],
    f: Callable[[np.ndarray], Optional[np.ndarray]],
) -> List[np.ndarray]:
    """
    Recursively apply f until it returns None.
    The sequence starts with init(mat).
    """
    seq = [init(mat)]
    while True:
        new_mat = f(seq[-1])
        if new_mat is None:
            return seq
        seq.append(new_mat)


def limited_sequence(
    max_length: int,
    mat: np.ndarray,
    init: Callable[[np.ndarray], np.ndarray],
    f: Callable[[np.ndarray], Optional[np.ndarray]],
) -> List[np.ndarray]:
    """Same as sequence, with at most max_length levels."""
    if max_length < 1:
        raise ValueError(f"A pyramid needs at least one level, got max_length={max_length}")
    length = 1

    def f_limited(m: np.ndarray) -> Optional[np.ndarray]:
        nonlocal length
        if length >= max_length:
            return None
        length += 1
        return f(m)

    return sequence(mat, init, f_limited)


def _mean_u8(a, b, c, d):
    s = a.astype(np.uint16) + b + c + d
    return (s // 4).astype(np.uint8)


def _mean_u16(a, b, c, d):
    s = a.astype(np.uint32) + b + c + d
    return (s // 4).astype(np.uint16)


def mean_pyramid(max_levels: int, mat: np.ndarray) -> List[np.ndarray]:
    """
    Pyramid of uint8 matrices, each level being the integer mean of 2x2 blocks.
    Level 0 is mat itself (no copy).
    """
    mat = np.asarray(mat)
    if mat.dtype != np.uint8:
        raise ValueError(f"mean_pyramid expects a uint8 matrix, got {mat.dtype}")
    return limited_sequence(max_levels, mat, lambda m: m, lambda m: halve(m, _mean_u8))


def mean_pyramid_u16(max_levels: int, mat: np.ndarray) -> List[np.ndarray]:
    # Zeros are averaged like any other value.
    return limited_sequence(max_levels, np.asarray(mat, dtype=np.uint16), lambda m: m, lambda m: halve(m, _mean_u16))


# Gradients ############################################################

def bloc_x(a, b, c, d) -> np.ndarray:
    """Horizontal gradient of a 2x2 block, per finer-level pixel."""
    a, b, c, d = (v.astype(np.float32) for v in (a, b, c, d))
    return (c + d - a - b) / 2.0


def bloc_y(a, b, c, d) -> np.ndarray:
    """Vertical gradient of a 2x2 block, per finer-level pixel."""
    a, b, c, d = (v.astype(np.float32) for v in (a, b, c, d))
    return (b - a + d - c) / 2.0


def bloc_squared_norm(a, b, c, d) -> np.ndarray:
    a, b, c, d = (v.astype(np.int32) for v in (a, b, c, d))
    dx = c + d - a - b
    dy = b - a + d - c
    # dx^2 + dy^2 = 2(c - b)^2 + 2(d - a)^2 <= 4 * 255^2, fits in uint16 once divided by 4
    return ((dx * dx + dy * dy) // 4).astype(np.uint16)


def _gradient_levels(multires_mat: List[np.ndarray]) -> List[np.ndarray]:
    if len(multires_mat) < 1:
        raise ValueError("Empty pyramid")
    return multires_mat[:-1]


def gradients_squared_norm(multires_mat: List[np.ndarray]) -> List[np.ndarray]:
    """
    Squared norm of centered gradients at each resolution,
    computed from the image at the higher resolution.
    Level k has the resolution of multires_mat[k + 1],
    so there is one less level in the gradients pyramid.
    """
    return [halve(m, bloc_squared_norm) for m in _gradient_levels(multires_mat)]


def gradients_xy(multires_mat: List[np.ndarray]) -> List[tuple[np.ndarray, np.ndarray]]:
    """Same layout as gradients_squared_norm, with exact (gx, gy) float32 pairs."""
    return [(halve(m, bloc_x), halve(m, bloc_y)) for m in _gradient_levels(multires_mat)]


def gradients(multires_mat: List[np.ndarray]) -> List[np.ndarray]:
    """Gradient norms pyramid (float32), used for candidates selection."""
    return [np.sqrt(g.astype(np.float32)) for g in gradients_squared_norm(multires_mat)]

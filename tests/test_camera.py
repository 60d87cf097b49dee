import numpy as np
import pytest

from dvo.dataset.tum import INTRINSICS_FR1, INTRINSICS_ICL_NUIM
from dvo.geom import se3
from dvo.geom.camera import Camera, Extrinsics, Intrinsics


def _pixel_grid(w, h, step=7):
    u, v = np.meshgrid(np.arange(0, w, step, dtype=np.float64), np.arange(0, h, step, dtype=np.float64))
    return np.stack([u.ravel(), v.ravel()], axis=1)


@pytest.mark.parametrize("intrinsics", [
    INTRINSICS_FR1,
    INTRINSICS_ICL_NUIM,
    Intrinsics(principal_point=(320.0, 240.0), focal_length=2.0, scaling=(250.0, 260.0), skew=1.5),
])
def test_back_project_then_project(intrinsics):
    extrinsics = Extrinsics.from_matrix(se3.exp(np.array([0.3, -0.1, 0.2, 0.05, 0.1, -0.2])))
    camera = Camera(intrinsics, extrinsics)
    pixels = _pixel_grid(640, 480)
    rng = np.random.default_rng(3)
    depth = rng.uniform(0.5, 6.0, size=len(pixels))

    points_w = camera.back_project(pixels, depth)
    uvw = camera.project(points_w)
    reprojected = uvw[:, :2] / uvw[:, 2:3]

    assert np.max(np.abs(reprojected - pixels)) < 1e-4
    assert np.allclose(uvw[:, 2], depth)


def test_project_single_point():
    intrinsics = Intrinsics(principal_point=(10.0, 20.0), focal_length=1.0, scaling=(100.0, 200.0))
    uvw = intrinsics.project(np.array([0.1, -0.2, 2.0]))
    assert np.allclose(uvw / uvw[2], [15.0, 0.0, 1.0])


def test_intrinsics_matrix():
    intrinsics = Intrinsics(principal_point=(1.0, 2.0), focal_length=2.0, scaling=(3.0, 4.0), skew=0.5)
    assert np.allclose(intrinsics.matrix(), [[6.0, 0.5, 1.0], [0.0, 8.0, 2.0], [0.0, 0.0, 1.0]])


def test_half_res_pixel_centers():
    intrinsics = Intrinsics(principal_point=(319.5, 239.5), focal_length=1.0, scaling=(500.0, 500.0))
    half = intrinsics.half_res()
    assert np.allclose(half.principal_point, (159.5, 119.5))
    assert np.allclose(half.scaling, (250.0, 250.0))
    # the point seen at the center of block {0, 1} lands on coarse pixel 0
    point = intrinsics.back_project(np.array([0.5, 0.5]), 3.0)
    uvw = half.project(point)
    assert np.allclose(uvw[:2] / uvw[2], [0.0, 0.0])


def test_multi_res():
    levels = INTRINSICS_FR1.multi_res(4)
    assert len(levels) == 4
    assert levels[0] == INTRINSICS_FR1
    assert np.allclose(levels[3].scaling, np.asarray(INTRINSICS_FR1.scaling) / 8.0)
    cameras = Camera(INTRINSICS_FR1).multi_res(3)
    assert [c.intrinsics for c in cameras] == levels[:3]
    assert all(c.extrinsics == Extrinsics.identity() for c in cameras)


def test_multi_res_requires_one_level():
    with pytest.raises(ValueError):
        INTRINSICS_FR1.multi_res(0)


def test_extrinsics_roundtrip():
    T = se3.exp(np.array([1.0, 2.0, 3.0, 0.4, -0.2, 0.1]))
    extrinsics = Extrinsics.from_matrix(T)
    assert np.allclose(extrinsics.matrix(), T)
    p_c = np.array([[0.1, 0.2, 1.0], [-1.0, 0.5, 4.0]])
    assert np.allclose(extrinsics.project(extrinsics.back_project(p_c)), p_c)


def test_extrinsics_equality_ignores_quaternion_sign():
    e = Extrinsics.from_matrix(se3.exp(np.array([0.0, 0.0, 1.0, 0.1, 0.2, 0.3])))
    flipped = Extrinsics(translation=e.translation, rotation=-e.rotation)
    assert e == flipped
    assert e != Extrinsics.identity()

import numpy as np
import pytest

from dvo.geom import se3
from dvo.geom.camera import Intrinsics
from dvo.modules import photometric
from dvo.modules.inverse_depth import WithVariance, Unknown

INTRINSICS = Intrinsics(principal_point=(15.5, 11.5), focal_length=1.0, scaling=(30.0, 30.0))


def test_bilinear():
    img = np.array([[0, 10], [20, 30]], dtype=np.uint8)
    img = np.pad(img, ((0, 1), (0, 1)), mode="edge")
    x = np.array([0.0, 0.5, 1.0, 0.25])
    y = np.array([0.0, 0.5, 0.0, 1.0])
    assert np.allclose(photometric.bilinear(img, x, y), [0.0, 15.0, 10.0, 22.5])


def test_bilinear_out_of_bounds():
    img = np.zeros((4, 4), dtype=np.uint8)
    with pytest.raises(ValueError):
        photometric.bilinear(img, np.array([3.0]), np.array([1.0]))
    assert photometric.bilinear(img, np.zeros(0), np.zeros(0)).shape == (0,)


def test_in_image_bounds():
    inside = photometric.in_image_bounds(np.array([0.0, 2.99, 3.0, -0.1, np.nan]), np.array([0.0, 1.0, 1.0, 1.0, 1.0]), (4, 4))
    assert inside.tolist() == [True, True, False, False, False]


def test_warp_identity_and_behind_camera():
    points = np.array([[0.0, 0.0, 2.0], [0.5, -0.2, 1.0], [0.0, 0.0, -1.0]])
    x, y, in_front = photometric.warp(points, np.eye(4), INTRINSICS)
    assert in_front.tolist() == [True, True, False]
    assert np.allclose([x[0], y[0]], [15.5, 11.5])
    assert np.allclose([x[1], y[1]], [30.5, 5.5])
    assert np.isnan(x[2])


def test_warp_jacobians_match_finite_differences():
    rng = np.random.default_rng(11)
    points = np.column_stack([rng.uniform(-0.5, 0.5, 5), rng.uniform(-0.5, 0.5, 5), rng.uniform(1.0, 3.0, 5)])
    # linear image I(x, y) = gx * x + gy * y
    grad = np.array([[2.0, -1.0]] * 5)
    J = photometric.warp_jacobians(points, grad, INTRINSICS)
    eps = 1e-6
    for i in range(6):
        xi = np.zeros(6)
        xi[i] = eps
        x_p, y_p, _ = photometric.warp(points, se3.exp(xi), INTRINSICS)
        x_m, y_m, _ = photometric.warp(points, se3.exp(-xi), INTRINSICS)
        numeric = (grad[:, 0] * (x_p - x_m) + grad[:, 1] * (y_p - y_m)) / (2 * eps)
        assert np.allclose(J[:, i], numeric, rtol=1e-4, atol=1e-6)


def test_huber_weights_and_energy():
    r = np.array([0.0, 1.0, -20.0])
    assert np.allclose(photometric.huber_weights(r, 10.0), [1.0, 1.0, 0.5])
    assert np.allclose(photometric.huber_weights(r, None), 1.0)
    w = np.ones(3)
    assert np.isclose(photometric.energy(r, w, None), (0.5 + 200.0) / 3.0)
    assert np.isclose(photometric.energy(r, w, 10.0), (0.5 + 10.0 * 15.0) / 3.0)


def _plane_level():
    h, w = 24, 32
    u, v = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
    img = (128 + 60 * np.sin(u / 3.0) * np.cos(v / 4.0)).astype(np.uint8)
    idepth = np.full((h, w), WithVariance(0.5, 1e-4), dtype=object)
    idepth[0, :] = Unknown
    gx = np.zeros((h, w), dtype=np.int16)
    gy = np.zeros((h, w), dtype=np.int16)
    gx[:, 1:-1] = (img[:, 2:].astype(np.int16) - img[:, :-2]) // 4
    gy[1:-1, :] = (img[2:, :].astype(np.int16) - img[:-2, :]) // 4
    return img, photometric.precompute_level(1, INTRINSICS, img, gx, gy, idepth)


def test_precompute_level():
    img, ref = _plane_level()
    assert len(ref) == 23 * 32
    assert ref.points.shape == (len(ref), 3)
    assert np.allclose(ref.points[:, 2], 2.0)
    assert np.allclose(ref.weights, 1.0)
    assert ref.jacobians.shape == (len(ref), 6)
    r, visible = photometric.residuals(ref, img, np.eye(4))
    assert np.allclose(r[visible], 0.0)
    # last row and column cannot be interpolated, up to rounding
    assert 21 * 30 <= int(visible.sum()) <= 23 * 32


def test_precompute_level_shape_mismatch():
    img = np.zeros((4, 4), dtype=np.uint8)
    g = np.zeros((4, 4), dtype=np.int16)
    with pytest.raises(ValueError):
        photometric.precompute_level(1, INTRINSICS, img, g, g, np.full((3, 4), Unknown, dtype=object))


def test_align_without_levels():
    proposal = photometric.align([], [np.zeros((4, 4), dtype=np.uint8)], np.eye(4), photometric.AlignParams())
    assert not proposal.valid
    assert proposal.reason == "REJECT_PHOTO_NO_LEVEL"


def test_align_at_identity_converges_immediately():
    img, ref = _plane_level()
    T, stats = photometric.align_level(ref, img, np.eye(4), photometric.AlignParams())
    assert stats.converged
    assert stats.energy < 1e-12
    assert np.allclose(T, np.eye(4), atol=1e-6)

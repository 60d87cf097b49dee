import numpy as np
import pytest

from dvo.modules import candidates, multires


def _corners(a, b, c, d):
    return np.stack([a, b, c, d], axis=-1)


def test_halve_block_layout():
    mat = np.arange(16).reshape(4, 4)
    out = multires.halve(mat, _corners)
    assert out.shape == (2, 2, 4)
    # a = (2i, 2j), b = (2i+1, 2j), c = (2i, 2j+1), d = (2i+1, 2j+1)
    assert list(out[0, 0]) == [0, 4, 1, 5]
    assert list(out[1, 1]) == [10, 14, 11, 15]


@pytest.mark.parametrize("shape, expected", [
    ((5, 4), (2, 2)),
    ((7, 9), (3, 4)),
    ((2, 2), (1, 1)),
])
def test_halve_drops_odd_border(shape, expected):
    mat = np.ones(shape, dtype=np.uint8)
    assert multires.halve(mat, multires._mean_u8).shape == expected


@pytest.mark.parametrize("shape", [(1, 10), (10, 1), (1, 1)])
def test_halve_too_small(shape):
    assert multires.halve(np.zeros(shape, dtype=np.uint8), multires._mean_u8) is None


def test_sequence_until_none():
    seq = multires.sequence(np.zeros((16, 40), dtype=np.uint8), lambda m: m, lambda m: multires.halve(m, multires._mean_u8))
    assert [m.shape for m in seq] == [(16, 40), (8, 20), (4, 10), (2, 5), (1, 2)]


def test_limited_sequence():
    mat = np.zeros((64, 64), dtype=np.uint8)
    halve = lambda m: multires.halve(m, multires._mean_u8)
    assert len(multires.limited_sequence(3, mat, lambda m: m, halve)) == 3
    assert len(multires.limited_sequence(1, mat, lambda m: m, halve)) == 1
    # stops early when the matrix is too small
    assert len(multires.limited_sequence(100, mat, lambda m: m, halve)) == 7
    with pytest.raises(ValueError):
        multires.limited_sequence(0, mat, lambda m: m, halve)


def test_mean_pyramid_values():
    mat = np.array([[0, 1, 10, 10],
                    [2, 3, 10, 11],
                    [255, 255, 0, 0],
                    [255, 254, 0, 3]], dtype=np.uint8)
    pyr = multires.mean_pyramid(3, mat)
    assert pyr[0] is mat
    assert pyr[1].dtype == np.uint8
    assert pyr[1].tolist() == [[1, 10], [254, 0]]
    assert pyr[2].tolist() == [[66]]
    assert len(pyr) == 3


def test_mean_pyramid_rejects_other_types():
    with pytest.raises(ValueError):
        multires.mean_pyramid(3, np.zeros((4, 4), dtype=np.float32))


def test_mean_pyramid_u16():
    depth = np.array([[10000, 10002], [0, 2]], dtype=np.uint16)
    pyr = multires.mean_pyramid_u16(4, depth)
    assert len(pyr) == 2
    assert pyr[1].dtype == np.uint16
    assert pyr[1][0, 0] == 5001


def test_gradients_of_horizontal_ramp():
    # intensity = 3 * column
    img = (3 * np.tile(np.arange(16), (8, 1))).astype(np.uint8)
    pyr = multires.mean_pyramid(3, img)
    grad_xy = multires.gradients_xy(pyr)
    sq_norms = multires.gradients_squared_norm(pyr)

    assert len(grad_xy) == len(sq_norms) == len(pyr) - 1
    for k, (gx, gy) in enumerate(grad_xy):
        assert gx.shape == gy.shape == sq_norms[k].shape == pyr[k + 1].shape
        assert gx.dtype == np.float32
        assert np.all(gy == 0)
    # 3 per pixel at level 0, 6 per pixel at level 1
    assert np.all(grad_xy[0][0] == 3)
    assert np.all(grad_xy[1][0] == 6)
    assert np.all(sq_norms[0] == 9)
    assert np.allclose(multires.gradients(pyr)[1], 6.0)


def test_block_gradients_are_symmetric():
    block = np.array([[0, 3], [0, 0]], dtype=np.uint8)
    pyr = [block, block[:1, :1]]
    pyr_mirror = [block[:, ::-1].copy(), block[:1, :1]]
    gx, gy = multires.gradients_xy(pyr)[0]
    gx_m, gy_m = multires.gradients_xy(pyr_mirror)[0]
    assert gx[0, 0] == 1.5 and gx_m[0, 0] == -1.5
    assert gy[0, 0] == gy_m[0, 0] == -1.5


def test_gradients_of_descending_ramp():
    # odd steps of -3 per pixel
    img = (45 - 3 * np.tile(np.arange(16), (8, 1))).astype(np.uint8)
    gx, _ = multires.gradients_xy(multires.mean_pyramid(2, img))[0]
    assert np.all(gx == -3.0)
    gx_up, _ = multires.gradients_xy(multires.mean_pyramid(2, img[:, ::-1].copy()))[0]
    assert np.all(gx_up == 3.0)


def test_gradients_extreme_values_fit():
    img = np.zeros((2, 2), dtype=np.uint8)
    img[1, 1] = 255
    sq = multires.gradients_squared_norm(multires.mean_pyramid(2, img))[0]
    assert sq.dtype == np.uint16
    assert sq[0, 0] == (255 * 255 * 2) // 4


def test_gradients_of_single_level():
    assert multires.gradients_squared_norm([np.zeros((4, 4), dtype=np.uint8)]) == []


def test_candidates_threshold():
    sq = np.array([[0, 48, 49, 50]], dtype=np.uint16)
    selected = candidates.select([sq, sq], 7.0)
    assert len(selected) == 2
    assert selected[0].tolist() == [[False, False, False, True]]
    assert candidates.count(selected) == [1, 1]
    with pytest.raises(ValueError):
        selected[0][0, 0] = True


def test_candidates_deterministic():
    rng = np.random.default_rng(5)
    img = rng.integers(0, 256, size=(48, 64), dtype=np.uint8)
    sq = multires.gradients_squared_norm(multires.mean_pyramid(4, img))
    first = candidates.select(sq, 10.0)
    second = candidates.select(sq, 10.0)
    assert all(np.array_equal(a, b) for a, b in zip(first, second))
    assert all(np.array_equal(a, s > 100) for a, s in zip(first, sq))
    assert candidates.select(sq, 0.0)[0].sum() == int((sq[0] > 0).sum())


def test_candidates_negative_threshold():
    with pytest.raises(ValueError):
        candidates.select([np.zeros((2, 2), dtype=np.uint16)], -1.0)

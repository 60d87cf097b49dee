import numpy as np
import pytest

import mock_scene
from dvo.geom.camera import Camera
from dvo.modules import inverse_depth
from dvo.modules.inverse_depth import Discarded, Unknown, WithVariance
from dvo.system import evaluation


def test_evaluate_idepth():
    est = np.array([[WithVariance(1.0, 1e-4), WithVariance(0.5, 1e-4)],
                    [Discarded, WithVariance(2.0, 1e-4)]], dtype=object)
    gt = np.array([[WithVariance(1.1, 1e-4), WithVariance(0.5, 1e-4)],
                   [WithVariance(1.0, 1e-4), Unknown]], dtype=object)
    ratio, rmse = evaluation.evaluate_idepth(est, gt)
    assert ratio == 0.5
    assert np.isclose(rmse, np.sqrt(0.01 / 2))


def test_evaluate_idepth_without_estimates():
    est = np.full((2, 2), Unknown, dtype=object)
    gt = np.full((2, 2), WithVariance(1.0, 1e-4), dtype=object)
    assert evaluation.evaluate_idepth(est, gt) == (0.0, None)
    with pytest.raises(ValueError):
        evaluation.evaluate_idepth(est, gt[:1])


def test_aggregate_skips_frames_without_rmse():
    evaluations = [
        {"dso_mean": (0.5, 0.1), "random": (0.2, None)},
        {"dso_mean": (0.25, 0.4), "random": (0.0, None)},
    ]
    agg = evaluation.aggregate(evaluations)
    ratio, rmse = agg["dso_mean"]
    assert np.isclose(ratio, 0.375)
    assert np.isclose(rmse, (0.5 * 0.1 + 0.25 * 0.4) / 0.75)
    assert agg["random"] == (0.1, None)
    assert evaluation.aggregate([]) == {}


def test_evaluate_all_strategies_on_a_plane():
    img, depth = mock_scene.render(np.eye(4))
    strategies = [inverse_depth.make_strategy(name) for name in ("dso_mean", "statistically_similar")]
    strategies.append(inverse_depth.make_strategy("random", seed=0))
    results = evaluation.evaluate_all_strategies_for(img, depth, strategies, nb_levels=4, candidates_threshold=1.0)

    assert set(results) == {"dso_mean", "statistically_similar", "random"}
    for ratio, rmse in results.values():
        assert 0.0 < ratio <= 1.0
        # a smooth plane is well estimated by any strategy
        assert rmse < 0.01


def test_reprojection_error_identity():
    img, depth = mock_scene.render(np.eye(4))
    idepth = inverse_depth.from_depth_map(depth, 5000.0, 1e-4)
    camera = Camera(mock_scene.INTRINSICS)
    error, total_weight, projected = evaluation.reprojection_error(camera, camera, idepth, img, img)
    assert error < 1e-6
    _, _, valid = inverse_depth.to_arrays(projected)
    n = int(valid.sum())
    # border rows and columns can fall outside, up to rounding
    assert (mock_scene.WIDTH - 2) * (mock_scene.HEIGHT - 2) <= n <= mock_scene.WIDTH * mock_scene.HEIGHT
    assert np.isclose(total_weight, 1e4 * n, rtol=1e-6)

import numpy as np

from dwslam.feature_grid import FeatureGrid, PointStatistics
from dwslam.features import FeatureDetections, ScalePyramid, best_and_second_best, hamming_distance, \
    match_stereo_rows, pairwise_hamming_distance


def _get_test_setup() -> tuple[np.ndarray, np.ndarray]:
    rng = np.random.default_rng(7)
    descriptors = rng.integers(0, 256, size=(3, 32), dtype=np.uint8)
    flipped = descriptors.copy()
    flipped[0, 0] ^= 0b00000111   # three bits away from the original
    return descriptors, flipped


def test_hamming_distance():
    descriptors, flipped = _get_test_setup()
    assert hamming_distance(descriptors[0], descriptors[0]) == 0
    assert hamming_distance(descriptors[0], flipped[0]) == 3
    assert hamming_distance(np.zeros(32, np.uint8), np.full(32, 255, np.uint8)) == 256


def test_pairwise_hamming_distance():
    descriptors, flipped = _get_test_setup()
    dists = pairwise_hamming_distance(descriptors, flipped)
    assert dists.shape == (3, 3)
    assert dists[0, 0] == 3
    assert dists[1, 1] == 0 and dists[2, 2] == 0
    assert pairwise_hamming_distance(descriptors, np.zeros((0, 32), np.uint8)).shape == (3, 0)


def test_best_and_second_best():
    assert best_and_second_best(np.array([40, 7, 12, 90])) == (1, 7, 12)
    idx, best, second = best_and_second_best(np.array([5]))
    assert (idx, best) == (0, 5) and second == np.iinfo(np.int32).max
    assert best_and_second_best(np.array([], dtype=np.int32))[0] == -1


def test_scale_pyramid():
    pyramid = ScalePyramid(scale_factor=1.2, n_levels=8)
    assert np.isclose(pyramid.scale(0), 1.)
    assert np.isclose(pyramid.scale(2), 1.44)
    assert np.isclose(pyramid.sigma2(1), 1.44)
    assert np.allclose(pyramid.level_sigma2 * pyramid.inv_level_sigma2, 1.)
    assert len(pyramid.scale_factors) == 8


def test_stereo_rows_matching():
    rng = np.random.default_rng(3)
    descriptors = rng.integers(0, 256, size=(3, 32), dtype=np.uint8)
    left = FeatureDetections(
        keypoints=np.array([[100., 50.], [200., 80.], [300., 120.]]),
        octaves=np.zeros(3, dtype=np.int32),
        descriptors=descriptors,
    )
    right = FeatureDetections(
        keypoints=np.array([[90., 50.5], [190., 300.], [310., 120.]]),
        octaves=np.zeros(3, dtype=np.int32),
        descriptors=descriptors,
    )

    right_u = match_stereo_rows(left, right)

    assert right_u[0] == 90.
    assert np.isnan(right_u[1])       # partner is on another row
    assert np.isnan(right_u[2])       # negative disparity


def test_feature_grid_takes_one_landmark_per_cell():
    grid = FeatureGrid.from_bounds(0., 640., 0., 480., cell_size=30)
    assert grid.shape == (16, 22)

    eligible, col, row = grid.is_point_eligible(95., 40.)
    assert eligible and (col, row) == (3, 1)
    grid.add_landmark(col, row, slot=7)

    assert not grid.is_point_eligible(91., 59.)[0]
    assert grid.is_point_eligible(121., 59.)[0]
    assert not grid.is_point_eligible(-1., 10.)[0]
    assert not grid.is_point_eligible(10., 480.5)[0]
    assert grid.n_occupied() == 1
    assert grid.slots[1, 3] == 7


def test_feature_grid_existing_features():
    grid = FeatureGrid.from_bounds(0., 640., 0., 480., cell_size=30)
    keypoints = np.array([[10., 10.], [12., 14.], [200., 200.]])
    grid.set_existing_features(keypoints, [0, 1, 2])
    assert grid.n_occupied() == 2
    assert grid.slots[0, 0] == 0


def test_point_statistics_corners():
    center_only = np.array([[320., 240.]] * 10)
    stats = PointStatistics.from_keypoints(center_only, 0., 640., 0., 480.)
    assert stats.counts[1, 1] == 10
    assert stats.n_featureless_corners(4) == 4

    corners = np.array([[10., 10.], [630., 10.], [10., 470.], [630., 470.]])
    stats = PointStatistics.from_keypoints(np.repeat(corners, 5, axis=0), 0., 640., 0., 480.)
    assert stats.n_featureless_corners(4) == 0

    stats = PointStatistics.from_keypoints(np.repeat(corners[:1], 5, axis=0), 0., 640., 0., 480.)
    assert stats.n_featureless_corners(4) == 3

    assert PointStatistics.from_keypoints(np.zeros((0, 2)), 0., 640., 0., 480.).n_featureless_corners() == 4

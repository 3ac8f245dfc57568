import numpy as np

from dwslam.cam import CameraIntrinsics
from dwslam.features import FeatureDetections, ScalePyramid
from dwslam.frame import Frame
from dwslam.keyframe import KeyFrame
from dwslam.map import Map
from dwslam.poses import identity_pose
from dwslam.retrieval import KeyFrameDatabase, Vocabulary, bow_score

CAM = CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0, screen_h=480, screen_w=640)


def _random_descriptors(n: int, seed: int = 0) -> np.ndarray:
    return np.random.default_rng(seed).integers(0, 256, size=(n, 32), dtype=np.uint8)


def _make_frame(frame_id: int, descriptors: np.ndarray) -> Frame:
    n = len(descriptors)
    rng = np.random.default_rng(frame_id)
    detections = FeatureDetections(
        keypoints=rng.uniform([0., 0.], [640., 480.], size=(n, 2)),
        octaves=np.zeros(n, dtype=np.int32),
        descriptors=descriptors,
    )
    return Frame(id=frame_id, timestamp=float(frame_id), detections=detections, cam=CAM, pyramid=ScalePyramid(),
                 pose=identity_pose())


def _get_test_setup():
    words = _random_descriptors(20)
    vocabulary = Vocabulary(words=words)
    database = KeyFrameDatabase(vocabulary=vocabulary)
    map = Map()
    keyframe_a = KeyFrame.from_frame(_make_frame(0, words[:10]), map, database)
    keyframe_b = KeyFrame.from_frame(_make_frame(1, words[10:]), map, database)
    for keyframe in [keyframe_a, keyframe_b]:
        map.add_keyframe(keyframe)
        database.add(keyframe)
    return words, database, keyframe_a, keyframe_b


def test_transform_counts_words():
    words = _random_descriptors(3)
    vocabulary = Vocabulary(words=words)

    bow = vocabulary.transform(words[:2])

    assert bow == {0: 0.5, 1: 0.5}
    assert vocabulary.transform(np.zeros((0, 32), dtype=np.uint8)) == {}


def test_bow_score():
    assert bow_score({0: 0.5, 1: 0.5}, {0: 0.5, 1: 0.5}) == 1.
    assert bow_score({0: 1.}, {1: 1.}) == 0.
    assert bow_score({0: 0.5, 1: 0.5}, {0: 1.}) == 0.5


def test_vocabulary_serialization():
    vocabulary = Vocabulary(words=_random_descriptors(5))
    restored = Vocabulary.loads(vocabulary.dumps())
    assert restored.words.dtype == np.uint8
    assert np.array_equal(restored.words, vocabulary.words)


def test_training_on_distinct_descriptors_keeps_them():
    descriptors = _random_descriptors(3, seed=7)

    vocabulary = Vocabulary.train(descriptors, n_words=3)

    assert vocabulary.n_words == 3
    assert {row.tobytes() for row in vocabulary.words} == {row.tobytes() for row in descriptors}


def test_training_never_asks_for_more_words_than_descriptors():
    vocabulary = Vocabulary.train(_random_descriptors(4), n_words=100)
    assert vocabulary.n_words == 4


def test_database_bookkeeping():
    _, database, keyframe_a, keyframe_b = _get_test_setup()
    assert database.n_keyframes() == 2

    database.erase(keyframe_a)
    assert database.n_keyframes() == 1

    database.clear()
    assert database.n_keyframes() == 0


def test_relocalization_candidates():
    words, database, keyframe_a, _ = _get_test_setup()
    query = _make_frame(5, words[:10])

    assert database.detect_relocalization_candidates(query) == [keyframe_a]


def test_culled_keyframe_is_not_a_candidate():
    words, database, keyframe_a, _ = _get_test_setup()
    keyframe_a.set_bad_flag()

    assert database.detect_relocalization_candidates(_make_frame(5, words[:10])) == []
    assert database.n_keyframes() == 1

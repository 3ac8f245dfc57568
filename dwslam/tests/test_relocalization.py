from typing import List, Set, Tuple

import attr
import numpy as np

from dwslam.cam import CameraIntrinsics, project_cam_coords
from dwslam.features import FeatureDetections, ScalePyramid
from dwslam.frame import Frame
from dwslam.keyframe import KeyFrame
from dwslam.landmark import Landmark
from dwslam.map import Map
from dwslam.matcher import OrbMatcher
from dwslam.poses import get_SE3_pose, identity_pose
from dwslam.relocalization import Relocalizer
from dwslam.transforms import world_to_cam

CAM = CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0, screen_h=480, screen_w=640)
FRAME_POSE = get_SE3_pose(x=-0.1)


@attr.define
class _RecordingMatcher:
    """ Remembers the window and descriptor distance of every projection search """
    matcher: OrbMatcher = attr.Factory(lambda: OrbMatcher.build(nn_ratio=0.9))
    calls: List[Tuple[float, int]] = attr.Factory(list)

    def search_by_projection_keyframe(self, frame, keyframe, already_found, th, orb_dist) -> int:
        self.calls.append((th, orb_dist))
        return self.matcher.search_by_projection_keyframe(frame, keyframe, already_found, th, orb_dist)


@attr.define
class _ScriptedMatcher:
    """ Binds prepared (frame slot, keyframe slot) pairs, one batch per projection search """
    keyframe: KeyFrame
    batches: List[List[Tuple[int, int]]]
    calls: List[Tuple[float, int]] = attr.Factory(list)

    def search_by_projection_keyframe(self, frame, keyframe, already_found: Set[Landmark], th, orb_dist) -> int:
        self.calls.append((th, orb_dist))
        batch = self.batches[len(self.calls) - 1]
        for frame_slot, keyframe_slot in batch:
            frame.bind_landmark(frame_slot, self.keyframe.landmarks[keyframe_slot])
        return len(batch)


def _points() -> np.ndarray:
    """ A grid at three different depths, seen from the keyframe at the origin """
    u, v = np.meshgrid(80. + 40. * np.arange(14), 30. + 42. * np.arange(10))
    u, v = u.reshape(-1), v.reshape(-1)
    depth = 2. + 0.5 * (np.arange(len(u)) % 3)
    return np.column_stack([(u - 320.) / 500. * depth, (v - 240.) / 500. * depth, depth])


def _descriptors(n: int) -> np.ndarray:
    return np.random.default_rng(0).integers(0, 256, size=(n, 32), dtype=np.uint8)


def _flip_bits(descriptors: np.ndarray, n_bits: int) -> np.ndarray:
    rng = np.random.default_rng(1)
    bits = np.unpackbits(descriptors, axis=1)
    for row in bits:
        row[rng.choice(bits.shape[1], size=n_bits, replace=False)] ^= 1
    return np.packbits(bits, axis=1)


def _frame(frame_id: int, points_w: np.ndarray, pose: np.ndarray, descriptors: np.ndarray) -> Frame:
    detections = FeatureDetections(
        keypoints=project_cam_coords(world_to_cam(points_w, pose), CAM),
        octaves=np.zeros(len(points_w), dtype=np.int32),
        descriptors=descriptors,
    )
    return Frame(id=frame_id, timestamp=float(frame_id), detections=detections, cam=CAM, pyramid=ScalePyramid())


def _get_test_setup(frame_descriptors: np.ndarray) -> Tuple[KeyFrame, Frame]:
    """ Keyframe at the origin observing every point, and a frame to relocalize a bit to the right of it """
    points_w = _points()
    map = Map()
    source = _frame(0, points_w, identity_pose(), _descriptors(len(points_w)))
    source.set_pose(identity_pose())
    keyframe = KeyFrame.from_frame(source, map)
    map.add_keyframe(keyframe)
    for slot, point in enumerate(points_w):
        landmark = map.create_landmark(point, keyframe, slot)
        landmark.update_normal_and_depth()
        landmark.compute_distinctive_descriptor()

    return keyframe, _frame(1, points_w, FRAME_POSE, frame_descriptors)


def test_relocalize_against_a_keyframe():
    keyframe, frame = _get_test_setup(_descriptors(140))
    relocalizer = Relocalizer(database=None, projection_matcher=_RecordingMatcher())

    assert relocalizer.relocalize(frame, [keyframe])

    assert np.allclose(frame.get_pose(), FRAME_POSE, atol=1e-4)
    assert frame.n_tracked_landmarks() == 140
    assert all(frame.landmarks[slot] is keyframe.landmarks[slot] for slot in range(140))
    # plenty of descriptor matches, no need to look around
    assert relocalizer.projection_matcher.calls == []


def test_relocalization_grows_a_weak_hypothesis_by_projection():
    # only the first 40 descriptors survive the descriptor matching, the rest are too far off for it
    descriptors = _descriptors(140)
    descriptors[40:] = _flip_bits(descriptors[40:], 60)
    keyframe, frame = _get_test_setup(descriptors)
    relocalizer = Relocalizer(database=None, projection_matcher=_RecordingMatcher())

    assert relocalizer.relocalize(frame, [keyframe])

    assert relocalizer.projection_matcher.calls == [(10, 100)]
    assert frame.n_tracked_landmarks() == 140
    assert np.allclose(frame.get_pose(), FRAME_POSE, atol=1e-4)


def test_relocalization_second_projection_search_after_outliers():
    descriptors = _descriptors(140)
    descriptors[20:] = _descriptors(260)[140:]
    keyframe, frame = _get_test_setup(descriptors)
    # 20 good and 12 wrong pairs first, 40 inliers is not good enough yet, then 20 more good ones
    first = [(slot, slot) for slot in range(20, 40)] + [(slot, slot + 50) for slot in range(40, 52)]
    second = [(slot, slot) for slot in range(60, 80)]
    matcher = _ScriptedMatcher(keyframe=keyframe, batches=[first, second])
    relocalizer = Relocalizer(database=None, projection_matcher=matcher)

    candidate = relocalizer._prepare(frame, [keyframe])[0]
    assert sum(m is not None for m in candidate.matches) == 20
    frame.set_pose(FRAME_POSE)
    inliers = np.array([m is not None for m in candidate.matches])

    n_good = relocalizer._refine(frame, candidate, inliers)

    assert matcher.calls == [(10, 100), (3, 64)]
    assert n_good == 60
    assert frame.n_tracked_landmarks() == 60
    assert all(frame.landmarks[slot] is None for slot in range(40, 52))


def test_relocalization_rejects_spurious_matches():
    # every descriptor matches, but to the wrong place
    descriptors = _descriptors(140)[np.random.default_rng(2).permutation(140)]
    keyframe, frame = _get_test_setup(descriptors)
    relocalizer = Relocalizer(database=None)

    assert not relocalizer.relocalize(frame, [keyframe])

    assert frame.n_tracked_landmarks() == 0


def test_forced_candidates_come_from_covisibility():
    keyframe, frame = _get_test_setup(_descriptors(140))
    relocalizer = Relocalizer(database=None)

    assert relocalizer.select_candidates(frame, True, keyframe, None) == [keyframe]
    assert relocalizer.select_candidates(frame, True, None, None) == []

import numpy as np

from dwslam.cam import CameraIntrinsics
from dwslam.features import FeatureDetections, ScalePyramid
from dwslam.frame import Frame
from dwslam.keyframe import EraseHold, KeyFrame
from dwslam.map import Map
from dwslam.poses import get_SE3_pose
from dwslam.windows import DualWindow

CAM = CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0, screen_h=480, screen_w=640)


def _make_frame(frame_id: int, n_features: int = 30) -> Frame:
    rng = np.random.default_rng(frame_id)
    detections = FeatureDetections(
        keypoints=rng.uniform([0., 0.], [640., 480.], size=(n_features, 2)),
        octaves=np.zeros(n_features, dtype=np.int32),
        descriptors=rng.integers(0, 256, size=(n_features, 32), dtype=np.uint8),
    )
    return Frame(id=frame_id, timestamp=0.1 * frame_id, detections=detections, cam=CAM, pyramid=ScalePyramid(),
                 pose=get_SE3_pose(x=-0.1 * frame_id))


def _make_keyframe(map: Map, frame_id: int) -> KeyFrame:
    keyframe = KeyFrame.from_frame(_make_frame(frame_id), map)
    map.add_keyframe(keyframe)
    return keyframe


def _get_test_setup():
    """ Two keyframes sharing 20 landmarks, the first one also sees 5 more on its own """
    map = Map()
    keyframe_0 = _make_keyframe(map, 0)
    keyframe_1 = _make_keyframe(map, 1)
    shared = []
    for slot in range(25):
        landmark = map.create_landmark(np.array([0.1 * slot, 0., 3.]), keyframe_0, slot)
        if slot < 20:
            keyframe_1.add_landmark(landmark, slot)
            landmark.add_observation(keyframe_1, slot)
            shared.append(landmark)
    return map, keyframe_0, keyframe_1, shared


def test_temporal_window_is_bounded():
    window = DualWindow(temporal_size=3)
    frames = [_make_frame(i) for i in range(6)]
    window.reset_to(frames[:1])
    for frame in frames[1:]:
        window.push(frame)

    assert [frame.id for frame in window.temporal_frames()] == [3, 4, 5]
    assert all(frame.released for frame in frames[:3])
    assert not any(frame.released for frame in frames[3:])
    assert frames[3].prev_frame is None
    assert frames[4].prev_frame is frames[3]
    assert frames[4].next_frame is frames[5]

    assert window.is_in_temporal_window(frames[4])
    assert not window.is_in_temporal_window(frames[1])


def test_oldest_frame_gets_first_estimate():
    window = DualWindow(temporal_size=2)
    frames = [_make_frame(i) for i in range(3)]
    window.reset_to(frames[:2])
    assert frames[1].first_estimate_pose is None

    window.push(frames[2])

    assert np.allclose(frames[1].first_estimate_pose, frames[1].pose)
    assert frames[2].first_estimate_pose is None

    frames[1].set_pose(get_SE3_pose(x=5.))
    frames[1].set_first_estimate()
    assert np.allclose(frames[1].first_estimate_pose, get_SE3_pose(x=-0.1))


def test_evicted_keyframe_goes_back_to_the_back_ends():
    map, keyframe_0, _, shared = _get_test_setup()
    keyframe_0.set_not_erase(EraseHold.DOUBLE_WINDOW)
    window = DualWindow(temporal_size=1)
    window.reset_to([keyframe_0])

    window.push(_make_frame(2))

    assert keyframe_0.is_erasable()
    assert not keyframe_0.released
    assert all(landmark.first_estimate is not None for landmark in shared)
    assert window.temporal_frames()[0].id == 2


def test_update_reference_builds_spatial_window():
    map, keyframe_0, keyframe_1, shared = _get_test_setup()
    window = DualWindow(temporal_size=5, spatial_size=10)
    window.reset_to([keyframe_1, _make_frame(2)])

    current = _make_frame(3)
    for slot, landmark in enumerate(shared):
        current.bind_landmark(slot, landmark)

    reference = window.update_reference(current)

    assert window.reference_keyframe is keyframe_0
    assert window.spatial == [keyframe_0]
    assert keyframe_0.is_held(EraseHold.DOUBLE_WINDOW)
    assert len(reference) == 25
    assert len(set(id(landmark) for landmark in reference)) == 25
    assert all(landmark.n_observations_in_double_window == 2 for landmark in shared)
    assert all(landmark.reference_epoch == current.id for landmark in reference)


def test_update_reference_drops_bad_landmarks_from_frame():
    map, _, keyframe_1, shared = _get_test_setup()
    window = DualWindow()
    window.reset_to([keyframe_1, _make_frame(2)])

    current = _make_frame(3)
    current.bind_landmark(0, shared[0])
    current.bind_landmark(1, shared[1])
    shared[1].set_bad_flag()

    window.update_reference(current)

    assert current.landmarks[0] is shared[0]
    assert current.landmarks[1] is None


def test_clear_releases_everything():
    map, keyframe_0, keyframe_1, _ = _get_test_setup()
    keyframe_1.set_not_erase()
    transient = _make_frame(2)
    window = DualWindow()
    window.reset_to([keyframe_1, transient])

    window.clear()

    assert len(window) == 0
    assert keyframe_1.is_erasable()
    assert transient.released
    assert window.reference_keyframe is None


def _current_frame_seeing(landmarks) -> Frame:
    current = _make_frame(3)
    for slot, landmark in enumerate(landmarks):
        current.bind_landmark(slot, landmark)
    return current


def test_second_initial_keyframe_stays_held_through_hand_off():
    map, keyframe_0, keyframe_1, shared = _get_test_setup()
    for keyframe in (keyframe_0, keyframe_1):
        keyframe.set_not_erase(EraseHold.DOUBLE_WINDOW)
    window = DualWindow()
    window.reset_to([keyframe_0])

    window.update_reference(_current_frame_seeing(shared))
    assert window.spatial == []
    assert keyframe_1.is_held(EraseHold.DOUBLE_WINDOW)

    window.push(keyframe_1)

    assert keyframe_1 in window.temporal_frames()
    assert keyframe_1.is_held(EraseHold.DOUBLE_WINDOW)
    # a cull from the back end waits until the keyframe leaves the windows
    keyframe_1.set_bad_flag()
    assert not keyframe_1.is_bad


def test_single_frame_temporal_window_does_not_leak_holds():
    map, keyframe_0, keyframe_1, shared = _get_test_setup()
    window = DualWindow()
    window.reset_to([keyframe_0])

    window.update_reference(_current_frame_seeing(shared))

    assert window.spatial == []
    assert keyframe_1.is_erasable()

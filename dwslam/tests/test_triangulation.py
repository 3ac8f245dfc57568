import numpy as np

from dwslam.cam import CameraIntrinsics, StereoRig, project_cam_coords, px_2d_to_cam_coords_3d_homo
from dwslam.features import FeatureDetections, ScalePyramid
from dwslam.frame import Frame
from dwslam.keyframe import KeyFrame
from dwslam.map import Map
from dwslam.matcher import OrbMatcher
from dwslam.poses import get_SE3_pose, identity_pose
from dwslam.transforms import world_to_cam
from dwslam.triangulation import RejectReason, TriangulationGates, TriangulationStats, _gate_point, compute_F12, \
    linear_triangulation, triangulate_quad_matches, triangulate_with_keyframe

CAM = CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0, screen_h=480, screen_w=640)
BASELINE = 0.5


def _random_points(n: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform([-1., -0.7, 3.], [1., 0.7, 5.], size=(n, 3))


def _observe(frame_id: int, points_w: np.ndarray, pose_cw: np.ndarray, stereo: StereoRig = None) -> Frame:
    """ A frame that sees every point, slot i is point i, all frames share the descriptors """
    points_c = world_to_cam(points_w, pose_cw)
    keypoints = project_cam_coords(points_c, CAM)
    right_u = None
    if stereo is not None:
        right_u = keypoints[:, 0] - CAM.fx * BASELINE / points_c[:, 2]
    detections = FeatureDetections(
        keypoints=keypoints,
        octaves=np.zeros(len(points_w), dtype=np.int32),
        descriptors=np.random.default_rng(42).integers(0, 256, size=(len(points_w), 32), dtype=np.uint8),
        right_u=right_u,
    )
    return Frame(id=frame_id, timestamp=float(frame_id), detections=detections, cam=CAM, pyramid=ScalePyramid(),
                 stereo=stereo, pose=pose_cw)


def _get_test_setup() -> tuple[Frame, Frame, np.ndarray]:
    point_w = np.array([0.2, -0.1, 4.])
    frame_1 = _observe(0, point_w[None], identity_pose())
    frame_2 = _observe(1, point_w[None], get_SE3_pose(x=-0.5))
    return frame_1, frame_2, point_w


def test_linear_triangulation_known_point():
    point_w = np.array([0.3, -0.4, 6.])
    poses = [identity_pose(), get_SE3_pose(x=-0.5, yaw=0.05)]
    observations = [world_to_cam(point_w, pose)[0] / world_to_cam(point_w, pose)[0, 2] for pose in poses]

    estimate = linear_triangulation(observations, poses)

    assert np.allclose(estimate, point_w)


def test_gates_accept_consistent_point():
    frame_1, frame_2, point_w = _get_test_setup()
    reason = _gate_point(point_w, frame_1, 0, frame_2, 0, TriangulationGates(), lambda d1, d2: True)
    assert reason is None


def test_gates_reject_point_behind_camera():
    frame_1, frame_2, point_w = _get_test_setup()
    behind = point_w * np.array([1., 1., -1.])
    assert _gate_point(behind, frame_1, 0, frame_2, 0, TriangulationGates(), lambda d1, d2: True) \
        == RejectReason.NEG_Z


def test_gates_reject_large_reprojection_error():
    frame_1, frame_2, point_w = _get_test_setup()
    frame_2.keypoints[0] += np.array([20., 0.])
    assert _gate_point(point_w, frame_1, 0, frame_2, 0, TriangulationGates(), lambda d1, d2: True) \
        == RejectReason.REPROJ


def test_gates_reject_degenerate_and_inconsistent_points():
    frame_1, frame_2, point_w = _get_test_setup()
    gates = TriangulationGates()
    assert _gate_point(None, frame_1, 0, frame_2, 0, gates, lambda d1, d2: True) == RejectReason.SVD0
    assert _gate_point(point_w, frame_1, 0, frame_2, 0, gates, lambda d1, d2: False) == RejectReason.DIST_RATIO


def test_fundamental_matrix_epipolar_constraint():
    points_w = _random_points(10)
    frame_1 = _observe(0, points_w, get_SE3_pose(x=-0.3, yaw=0.1))
    frame_2 = _observe(1, points_w, get_SE3_pose(y=0.2, pitch=-0.05))

    F12 = compute_F12(frame_1, frame_2)
    F12 = F12 / np.linalg.norm(F12)

    x1 = np.column_stack([frame_1.keypoints, np.ones(10)])
    x2 = np.column_stack([frame_2.keypoints, np.ones(10)])
    residuals = np.einsum('ni,ij,nj->n', x1, F12, x2)
    assert np.all(np.abs(residuals) < 1e-6)


def test_triangulate_with_keyframe():
    points_w = _random_points(40)
    map = Map()
    other_keyframe = KeyFrame.from_frame(_observe(0, points_w, identity_pose()), map)
    current_keyframe = KeyFrame.from_frame(_observe(1, points_w, get_SE3_pose(x=-0.3)), map)
    map.add_keyframe(other_keyframe)
    map.add_keyframe(current_keyframe)

    stats = triangulate_with_keyframe(map, current_keyframe, other_keyframe, OrbMatcher.build(0.6),
                                      TriangulationGates())

    assert stats.n_accepted > 0
    assert stats.n_accepted + stats.n_rejected() == stats.n_candidates
    assert map.landmarks_in_map() == stats.n_accepted
    for slot, landmark in enumerate(current_keyframe.landmarks):
        if landmark is None:
            continue
        assert other_keyframe.landmarks[slot] is landmark
        assert np.allclose(landmark.get_world_pos(), points_w[slot], atol=1e-6)
        assert world_to_cam(landmark.get_world_pos(), current_keyframe.pose)[0, 2] > 0.
        assert world_to_cam(landmark.get_world_pos(), other_keyframe.pose)[0, 2] > 0.
        assert landmark.n_observations() == 2
        assert landmark.descriptor is not None


def test_triangulate_quad_matches():
    points_w = _random_points(30, seed=1)
    stereo = StereoRig(left=CAM, right=CAM, left_to_right=get_SE3_pose(x=-BASELINE))
    map = Map()
    previous_keyframe = KeyFrame.from_frame(_observe(0, points_w, identity_pose(), stereo), map)
    map.add_keyframe(previous_keyframe)
    current_frame = _observe(1, points_w, get_SE3_pose(x=-0.2), stereo)
    current_frame.right_u[0] = np.nan

    quad_matches = np.column_stack([np.arange(30), np.arange(30)])
    stats = triangulate_quad_matches(map, previous_keyframe, current_frame, quad_matches, TriangulationGates())

    assert stats.n_accepted > 0
    assert stats.rejected[RejectReason.PDOP] == 1
    assert previous_keyframe.landmarks[0] is None
    for slot, landmark in enumerate(previous_keyframe.landmarks):
        if landmark is None:
            continue
        assert current_frame.landmarks[slot] is landmark
        assert np.allclose(landmark.get_world_pos(), points_w[slot], atol=1e-6)


def test_triangulation_stats():
    stats = TriangulationStats()
    stats.reject(RejectReason.NEG_Z)
    stats.reject(RejectReason.NEG_Z)
    stats.reject(RejectReason.REPROJ)

    assert stats.n_rejected() == 3
    assert len(stats.histogram()) == len(RejectReason)
    df = stats.to_df()
    assert df.set_index('reason').loc['neg_z', 'count'] == 2


def test_normalized_coordinates():
    xs = px_2d_to_cam_coords_3d_homo(np.array([[320., 240.], [820., 740.]]), CAM)
    assert np.allclose(xs, [[0., 0., 1.], [1., 1., 1.]])

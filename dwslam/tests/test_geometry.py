import numpy as np

from dwslam.cam import CameraIntrinsics, project_cam_coords
from dwslam.features import FeatureDetections, ScalePyramid
from dwslam.frame import Frame
from dwslam.initializer import TwoViewInitializer
from dwslam.landmark import Landmark
from dwslam.map import Map
from dwslam.optimizer import FrameOnlyPoseOptimizer
from dwslam.pnp import PnPSolver
from dwslam.poses import get_SE3_pose, identity_pose
from dwslam.transforms import world_to_cam

CAM = CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0, screen_h=480, screen_w=640)


def _make_frame(points_w: np.ndarray, pose_cw: np.ndarray) -> Frame:
    n = len(points_w)
    detections = FeatureDetections(
        keypoints=project_cam_coords(world_to_cam(points_w, pose_cw), CAM),
        octaves=np.zeros(n, dtype=np.int32),
        descriptors=np.zeros((n, 32), dtype=np.uint8),
    )
    return Frame(id=0, timestamp=0., detections=detections, cam=CAM, pyramid=ScalePyramid())


def _get_test_setup(n_points: int = 60) -> tuple[np.ndarray, np.ndarray, Frame, list]:
    rng = np.random.default_rng(11)
    points_w = rng.uniform([-1.5, -1., 4.], [1.5, 1., 8.], size=(n_points, 3))
    true_pose = get_SE3_pose(x=0.1, y=-0.05, z=0.2, yaw=0.05, pitch=-0.02)
    frame = _make_frame(points_w, true_pose)
    map = Map()
    landmarks = [Landmark(id=i, position=p, map=map) for i, p in enumerate(points_w)]
    return points_w, true_pose, frame, landmarks


def test_pnp_recovers_pose():
    _, true_pose, frame, landmarks = _get_test_setup()
    solver = PnPSolver.from_matches(frame, landmarks)

    result = solver.iterate(300)

    assert result.pose is not None
    assert np.allclose(result.pose, true_pose, atol=1e-3)
    assert result.n_inliers == len(landmarks)
    assert result.inliers.all()


def test_pnp_gives_up_without_enough_correspondences():
    _, _, frame, landmarks = _get_test_setup()
    matches = [None] * len(landmarks)
    matches[0], matches[1], matches[2] = landmarks[:3]
    solver = PnPSolver.from_matches(frame, matches)

    result = solver.iterate(5)

    assert result.pose is None
    assert result.no_more
    assert result.n_inliers == 0


def test_pose_optimizer_converges_and_flags_outliers():
    _, true_pose, frame, landmarks = _get_test_setup()
    corrupted = [3, 17, 29, 40, 51]
    frame.keypoints[corrupted] += np.array([40., -30.])
    for slot, landmark in enumerate(landmarks):
        frame.bind_landmark(slot, landmark)
    frame.set_pose(get_SE3_pose(x=0.15, y=-0.02, z=0.1, yaw=0.07, pitch=-0.01))

    n_inliers = FrameOnlyPoseOptimizer().optimize(frame)

    assert n_inliers == len(landmarks) - len(corrupted)
    assert np.allclose(frame.pose, true_pose, atol=1e-3)
    assert set(np.flatnonzero(frame.outliers)) == set(corrupted)
    assert frame.discard_outliers() == len(corrupted)
    assert frame.n_tracked_landmarks() == len(landmarks) - len(corrupted)


def test_pose_optimizer_needs_three_correspondences():
    _, _, frame, landmarks = _get_test_setup()
    frame.set_pose(identity_pose())
    frame.bind_landmark(0, landmarks[0])
    frame.bind_landmark(1, landmarks[1])

    assert FrameOnlyPoseOptimizer().optimize(frame) == 0
    assert np.allclose(frame.pose, identity_pose())


def test_two_view_initialization():
    rng = np.random.default_rng(5)
    points_w = rng.uniform([-1.5, -1., 4.], [1.5, 1., 8.], size=(120, 3))
    second_pose = get_SE3_pose(x=-0.5, yaw=0.02)
    reference = _make_frame(points_w, identity_pose())
    current = _make_frame(points_w, second_pose)

    initializer = TwoViewInitializer.from_reference_frame(reference)
    result = initializer.initialize(current, np.arange(120, dtype=np.int64))

    assert result is not None
    assert result.n_triangulated >= 50
    assert np.allclose(result.pose_cw[:3, :3], second_pose[:3, :3], atol=1e-3)
    direction = result.pose_cw[:3, 3] / np.linalg.norm(result.pose_cw[:3, 3])
    assert np.allclose(direction, [-1., 0., 0.], atol=1e-2)

    # structure is known up to scale, the scale being the baseline
    good = np.flatnonzero(result.triangulated)
    assert np.allclose(result.points_3d[good] * 0.5, points_w[good], rtol=1e-2, atol=1e-2)


def test_two_view_initialization_needs_matches():
    rng = np.random.default_rng(5)
    points_w = rng.uniform([-1.5, -1., 4.], [1.5, 1., 8.], size=(20, 3))
    reference = _make_frame(points_w, identity_pose())
    current = _make_frame(points_w, get_SE3_pose(x=-0.5))
    matches12 = np.full(20, -1, dtype=np.int64)
    matches12[:5] = np.arange(5)

    assert TwoViewInitializer.from_reference_frame(reference).initialize(current, matches12) is None

import numpy as np

from dwslam.motion_model import gravity_in_camera
from dwslam.poses import camera_orientation_quaternion_xyzw, get_SE3_pose, identity_pose
from dwslam.transforms import SE3_inverse, Sim3, camera_center, relative_transform, world_to_cam


def _get_test_setup() -> tuple[np.ndarray, np.ndarray]:
    pose_a = get_SE3_pose(x=0.5, y=-0.2, z=1.0, yaw=0.3, pitch=-0.1, roll=0.05)
    pose_b = get_SE3_pose(x=-1.0, y=0.4, z=0.2, yaw=-0.7, pitch=0.2, roll=0.1)
    return pose_a, pose_b


def test_se3_inverse():
    pose_a, _ = _get_test_setup()
    assert np.allclose(SE3_inverse(pose_a) @ pose_a, np.eye(4))
    assert np.allclose(SE3_inverse(pose_a), np.linalg.inv(pose_a))


def test_camera_center_maps_to_origin():
    pose_a, _ = _get_test_setup()
    center = camera_center(pose_a)
    assert np.allclose(world_to_cam(center, pose_a), np.zeros((1, 3)))


def test_relative_transform_maps_between_cameras():
    pose_a, pose_b = _get_test_setup()
    point_w = np.array([0.3, 1.2, 4.0])

    a_from_b = relative_transform(pose_a, pose_b)
    point_in_b = world_to_cam(point_w, pose_b)[0]
    point_in_a = a_from_b[:3, :3] @ point_in_b + a_from_b[:3, 3]

    assert np.allclose(point_in_a, world_to_cam(point_w, pose_a)[0])


def test_sim3_without_scale_is_a_plain_composition():
    pose_a, pose_b = _get_test_setup()
    correction = Sim3.from_SE3(pose_b)
    assert np.allclose(correction.correct_pose(pose_a), pose_a @ pose_b)


def test_sim3_scale_is_divided_out_of_translation():
    pose_a, _ = _get_test_setup()
    correction = Sim3(scale=2.0)

    corrected = correction.correct_pose(pose_a)

    assert np.allclose(corrected[:3, :3], pose_a[:3, :3])
    assert np.allclose(corrected[:3, 3], pose_a[:3, 3] / 2.0)
    assert np.allclose(corrected[3], [0., 0., 0., 1.])


def test_identity_orientation_quaternion():
    assert np.allclose(camera_orientation_quaternion_xyzw(identity_pose()), [0., 0., 0., 1.])


def test_orientation_quaternion_is_of_camera_in_world():
    pose_cw = get_SE3_pose(yaw=np.pi / 2)
    q_cw = camera_orientation_quaternion_xyzw(pose_cw)
    # rotation about z by -90 degrees, since the pose holds the inverse
    assert np.allclose(np.abs(q_cw), np.abs([0., 0., -np.sqrt(0.5), np.sqrt(0.5)]))
    assert np.sign(q_cw[2]) != np.sign(q_cw[3])


def test_gravity_in_camera():
    gravity_w = np.array([0., 9.81, 0.])
    last_pose = get_SE3_pose(yaw=np.pi / 2)
    delta = get_SE3_pose(x=1.0)

    gravity_c = gravity_in_camera(gravity_w, last_pose, delta)

    assert np.allclose(gravity_c, last_pose[:3, :3] @ gravity_w)
    assert np.allclose(gravity_in_camera(gravity_w, None, delta), gravity_w)
    assert np.allclose(gravity_in_camera(np.zeros(3), last_pose, delta), np.zeros(3))

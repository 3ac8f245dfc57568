import numpy as np
from scipy.spatial.transform import Rotation as R

from utils.custom_types import Array
from dwslam.types import RotationSO3, TransformSE3, Vector3d


def identity_pose() -> TransformSE3:
    return np.eye(4, dtype=np.float64)


def pose_from_Rt(rotation: RotationSO3, translation: Vector3d) -> TransformSE3:
    pose = np.eye(4, dtype=np.float64)
    pose[:3, :3] = rotation
    pose[:3, 3] = np.asarray(translation, dtype=np.float64).reshape(3)
    return pose


def get_SE3_pose(
    x: float = 0.0,
    y: float = 0.0,
    z: float = 0.0,
    yaw: float = 0.0,
    pitch: float = 0.0,
    roll: float = 0.0
) -> TransformSE3:
    """ Pose from translation and intrinsic zyx euler angles, mostly for tests and synthetic scenes. """
    rotation = R.from_euler('zyx', [yaw, pitch, roll]).as_matrix()
    return pose_from_Rt(rotation, np.array([x, y, z], dtype=np.float64))


def _reorthogonalize_rotation_matrix(R_: RotationSO3) -> RotationSO3:
    # Perform Gram-Schmidt orthogonalization
    u1 = R_[:, 0] / np.linalg.norm(R_[:, 0])
    u2 = R_[:, 1] - np.dot(u1, R_[:, 1]) * u1
    u2 /= np.linalg.norm(u2)
    u3 = np.cross(u1, u2)

    return np.column_stack([u1, u2, u3])


def correct_SE3_matrix_inplace(T: TransformSE3) -> TransformSE3:
    T[:3, :3] = _reorthogonalize_rotation_matrix(T[:3, :3])
    return T


def rotation_to_quaternion_xyzw(rotation: RotationSO3) -> Array['4', np.float64]:
    return R.from_matrix(np.copy(rotation)).as_quat()


def camera_orientation_quaternion_xyzw(pose_cw: TransformSE3) -> Array['4', np.float64]:
    """ Quaternion of Rwc, this is what goes to the trajectory files """
    return rotation_to_quaternion_xyzw(pose_cw[:3, :3].T)

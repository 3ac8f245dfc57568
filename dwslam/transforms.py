import attr
import numpy as np

from dwslam.types import TransformSE3, RotationSO3, WorldCoords3D, CamCoords3d, Vector3d


def SO3_inverse(R: RotationSO3) -> RotationSO3:
    """Inverts the rotation."""
    return R.T


def SE3_inverse(T: TransformSE3) -> TransformSE3:
    """Returns the inverse of the transformation."""
    tf = np.eye(4, dtype=np.float64)
    R_inv = T[:3, :3].T
    t = T[:3, 3]
    tf[0:3, 0:3] = R_inv
    tf[0:3, 3] = - R_inv @ t
    return tf


def world_to_cam(xs: WorldCoords3D, pose_cw: TransformSE3) -> CamCoords3d:
    xs = np.atleast_2d(xs)
    return xs @ pose_cw[:3, :3].T + pose_cw[:3, 3]


def camera_center(pose_cw: TransformSE3) -> Vector3d:
    """ Ow = -Rcw^T tcw """
    return - pose_cw[:3, :3].T @ pose_cw[:3, 3]


def relative_transform(pose_a_cw: TransformSE3, pose_b_cw: TransformSE3) -> TransformSE3:
    """ T_a<-b, i.e. maps points from camera b into camera a """
    return pose_a_cw @ SE3_inverse(pose_b_cw)


def homogenize(x):
    """ e.g. (3, 1, 4) -> (3, 1, 4, 1) """
    return np.concatenate([x, np.ones(x.shape[:-1] + (1,))], axis=-1)


def dehomogenize(x):
    """ e.g. (3, 1, 4, 1)  -> (3, 1, 4) """
    return x[..., :-1]


@attr.define
class Sim3:
    """ Similarity transform x -> s * R x + t.
    Loop closing hands these to the tracker as the new-world-from-old-world correction. """
    rotation: RotationSO3 = attr.Factory(lambda: np.eye(3, dtype=np.float64))
    translation: Vector3d = attr.Factory(lambda: np.zeros(3, dtype=np.float64))
    scale: float = 1.0

    @classmethod
    def from_SE3(cls, T: TransformSE3) -> 'Sim3':
        return cls(rotation=T[:3, :3].copy(), translation=T[:3, 3].copy(), scale=1.0)

    def as_matrix(self) -> np.ndarray:
        S = np.eye(4, dtype=np.float64)
        S[:3, :3] = self.scale * self.rotation
        S[:3, 3] = self.translation
        return S

    def correct_pose(self, pose_cw: TransformSE3) -> TransformSE3:
        """ Tcw_new = to_SE3(Scw_old * S_new2old), scale is divided out of the translation """
        scw = np.eye(4, dtype=np.float64)
        scw[:3, :3] = pose_cw[:3, :3]
        scw[:3, 3] = pose_cw[:3, 3]
        corrected = scw @ self.as_matrix()
        s = np.cbrt(np.linalg.det(corrected[:3, :3]))

        out = np.eye(4, dtype=np.float64)
        out[:3, :3] = corrected[:3, :3] / s
        out[:3, 3] = corrected[:3, 3] / s
        return out

from typing import Tuple

import attr
import cv2
import numpy as np

from utils.custom_types import Array
from dwslam.types import PxCoords2d, CamCoords3d, CamCoords3dHomog, TransformSE3


@attr.s(auto_attribs=True)
class CameraIntrinsics:
    fx: float
    fy: float
    cx: float
    cy: float
    screen_h: int   # traditionally not contained in intrinsics
    screen_w: int
    # k1 k2 p1 p2, we only ever feed undistorted keypoints downstream
    dist_coeffs: Array['4', np.float64] = attr.Factory(lambda: np.zeros(4, dtype=np.float64))

    @property
    def K(self) -> Array['3,3', np.float64]:
        return np.array([
            [self.fx, 0., self.cx],
            [0., self.fy, self.cy],
            [0., 0., 1.],
        ], dtype=np.float64)

    def is_in_image(self, u: float, v: float) -> bool:
        return 0. <= u < self.screen_w and 0. <= v < self.screen_h

    def get_bounds(self) -> Tuple[float, float, float, float]:
        """ min_x, max_x, min_y, max_y """
        return 0., float(self.screen_w), 0., float(self.screen_h)


@attr.s(auto_attribs=True)
class StereoRig:
    """ Rectified stereo pair, left camera is the reference one. """
    left: CameraIntrinsics
    right: CameraIntrinsics
    left_to_right: TransformSE3    # pose of left cam expressed in right cam, Tr<-l

    @property
    def baseline(self) -> float:
        return float(-self.left_to_right[0, 3])

    def right_pose(self, left_pose_cw: TransformSE3) -> TransformSE3:
        """ Tcw of the right camera given Tcw of the left one """
        return self.left_to_right @ left_pose_cw


def px_2d_to_cam_coords_3d_homo(
    xs: PxCoords2d,
    cam_intrinsics: CameraIntrinsics
) -> CamCoords3dHomog:
    # Warning! We assume no undistortion
    xs = np.atleast_2d(xs).astype(np.float64)
    us = (xs[:, 0] - cam_intrinsics.cx) / cam_intrinsics.fx
    vs = (xs[:, 1] - cam_intrinsics.cy) / cam_intrinsics.fy
    return np.column_stack([us, vs, np.ones_like(us)])


def project_cam_coords(
    points: CamCoords3d,
    cam_intrinsics: CameraIntrinsics
) -> PxCoords2d:
    points = np.atleast_2d(points)
    inv_z = 1.0 / points[:, 2]
    us = cam_intrinsics.fx * points[:, 0] * inv_z + cam_intrinsics.cx
    vs = cam_intrinsics.fy * points[:, 1] * inv_z + cam_intrinsics.cy
    return np.column_stack([us, vs])


def undistort_keypoints(
    xs: PxCoords2d,
    cam_intrinsics: CameraIntrinsics,
) -> PxCoords2d:
    if len(xs) == 0 or not np.any(cam_intrinsics.dist_coeffs):
        return np.asarray(xs, dtype=np.float64)

    undistorted = cv2.undistortPoints(
        np.asarray(xs, dtype=np.float64).reshape(-1, 1, 2),
        cam_intrinsics.K,
        cam_intrinsics.dist_coeffs,
        P=cam_intrinsics.K,
    )
    return undistorted.reshape(-1, 2)

""" Where the correspondences between consecutive frames come from.

INTERNAL: the tracker finds them itself, by projection and windowed descriptor search (monocular).
EXTERNAL_ODOMETRY: a visual odometry front hands over the relative motion and quad matches, features
seen in both images of the previous and of the current stereo pair (stereo).
"""
import logging
from typing import Optional, Protocol

import attr
import cv2
import numpy as np

from utils.enum_utils import StrEnum
from dwslam.cam import px_2d_to_cam_coords_3d_homo
from dwslam.frame import Frame
from dwslam.poses import identity_pose, pose_from_Rt
from dwslam.types import QuadMatches, TransformSE3

log = logging.getLogger(__name__)


class CorrespondenceSource(StrEnum):
    INTERNAL = 'internal'
    EXTERNAL_ODOMETRY = 'external_odometry'


@attr.define
class OdometryEstimate:
    valid: bool
    delta: TransformSE3          # Tcp, current camera from previous camera
    quad_matches: QuadMatches

    @classmethod
    def invalid(cls) -> 'OdometryEstimate':
        return cls(valid=False, delta=identity_pose(), quad_matches=np.zeros((0, 2), dtype=np.int64))

    @property
    def n_quad_matches(self) -> int:
        return len(self.quad_matches)


class IExternalOdometry(Protocol):
    def estimate(self, previous_frame: Optional[Frame], current_frame: Frame) -> OdometryEstimate:
        ...

    def reset(self):
        ...


@attr.define
class StereoOdometry:
    """ Frame to frame stereo odometry on the tracker's own features: cross checked descriptor matches
    between the left images, 3d points from the previous disparity, PnP RANSAC for the motion. """
    min_inliers: int = 10
    max_hamming_distance: int = 50
    reprojection_error: float = 2.0
    max_depth_in_baselines: float = 40.
    feature_matcher: cv2.BFMatcher = attr.ib(factory=lambda: cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=True), repr=False)

    def reset(self):
        pass

    def estimate(self, previous_frame: Optional[Frame], current_frame: Frame) -> OdometryEstimate:
        if previous_frame is None or previous_frame.stereo is None:
            return OdometryEstimate.invalid()
        if previous_frame.right_u is None or current_frame.right_u is None:
            return OdometryEstimate.invalid()
        if previous_frame.n_features == 0 or current_frame.n_features == 0:
            return OdometryEstimate.invalid()

        matches = self.feature_matcher.match(previous_frame.descriptors, current_frame.descriptors)
        pairs = np.array([
            (m.queryIdx, m.trainIdx) for m in matches if m.distance <= self.max_hamming_distance
        ], dtype=np.int64).reshape(-1, 2)

        stereo_prev = ~np.isnan(previous_frame.right_u[pairs[:, 0]])
        stereo_cur = ~np.isnan(current_frame.right_u[pairs[:, 1]])
        pairs = pairs[stereo_prev & stereo_cur]

        cam = previous_frame.cam
        disparity = previous_frame.keypoints[pairs[:, 0], 0] - previous_frame.right_u[pairs[:, 0]]
        baseline = previous_frame.stereo.baseline
        depth = np.where(disparity > 0., cam.fx * baseline / np.maximum(disparity, 1e-9), -1.)
        usable = (depth > 0.) & (depth < self.max_depth_in_baselines * baseline)
        pairs, depth = pairs[usable], depth[usable]

        if len(pairs) < max(self.min_inliers, 6):
            log.debug(f"Stereo odometry has only {len(pairs)} usable matches")
            return OdometryEstimate.invalid()

        points_prev = px_2d_to_cam_coords_3d_homo(previous_frame.keypoints[pairs[:, 0]], cam) * depth[:, None]
        pixels_cur = current_frame.keypoints[pairs[:, 1]]

        try:
            ok, rvec, tvec, inliers = cv2.solvePnPRansac(
                points_prev.reshape(-1, 1, 3),
                pixels_cur.reshape(-1, 1, 2),
                current_frame.cam.K,
                None,
                reprojectionError=self.reprojection_error,
                confidence=0.99,
                iterationsCount=200,
                flags=cv2.SOLVEPNP_EPNP,
            )
        except cv2.error as e:
            log.debug(f"Stereo odometry PnP failed: {e}")
            return OdometryEstimate.invalid()

        if not ok or inliers is None or len(inliers) < self.min_inliers:
            return OdometryEstimate.invalid()

        rotation, _ = cv2.Rodrigues(rvec)
        quad_matches = pairs[inliers.reshape(-1)]
        return OdometryEstimate(valid=True, delta=pose_from_Rt(rotation, tvec.reshape(3)), quad_matches=quad_matches)


def transfer_landmarks(previous_frame: Frame, current_frame: Frame, quad_matches: QuadMatches) -> int:
    """ Bind into the current frame the landmarks tracked by the previous frame at the matched slots """
    n = 0
    for prev_slot, cur_slot in quad_matches:
        landmark = previous_frame.landmarks[prev_slot]
        if landmark is None or landmark.is_bad or previous_frame.outliers[prev_slot]:
            continue
        current_frame.bind_landmark(int(cur_slot), landmark)
        n += 1
    return n

""" Monocular map initialization from two views: essential matrix, pose recovery, triangulation, and
a check that the geometry is not degenerate (enough parallax, enough well triangulated points). """
import logging
from typing import Optional

import attr
import cv2
import numpy as np

from utils.custom_types import Array
from dwslam.frame import Frame
from dwslam.poses import pose_from_Rt
from dwslam.types import CameraPoseSE3, PxCoords2d, WorldCoords3D

log = logging.getLogger(__name__)


@attr.define
class TwoViewInitialization:
    pose_cw: CameraPoseSE3                 # of the second view, the first one is the world
    points_3d: WorldCoords3D               # per slot of the reference frame, meaningful where triangulated
    triangulated: Array['N', bool]         # per slot of the reference frame

    @property
    def n_triangulated(self) -> int:
        return int(self.triangulated.sum())


@attr.define
class TwoViewInitializer:
    reference_keypoints: PxCoords2d
    K: Array['3,3', np.float64]
    sigma: float = 1.0
    max_iterations: int = 200
    min_triangulated: int = 50
    min_parallax_deg: float = 1.0

    @classmethod
    def from_reference_frame(cls, frame: Frame, sigma: float = 1.0, max_iterations: int = 200):
        return cls(reference_keypoints=frame.keypoints.copy(), K=frame.cam.K, sigma=sigma, max_iterations=max_iterations)

    def initialize(self, current_frame: Frame, matches12: Array['N', np.int64]) -> Optional[TwoViewInitialization]:
        idx1 = np.flatnonzero(matches12 >= 0)
        if len(idx1) < 8:
            return None

        p1 = self.reference_keypoints[idx1].astype(np.float64)
        p2 = current_frame.keypoints[matches12[idx1]].astype(np.float64)

        E, mask = cv2.findEssentialMat(p1, p2, self.K, method=cv2.RANSAC, prob=0.999, threshold=self.sigma,
                                       maxIters=self.max_iterations * 5)
        if E is None or E.shape[0] < 3:
            log.debug("Essential matrix estimation failed")
            return None

        _, rotation, translation, pose_mask = cv2.recoverPose(E[:3], p1, p2, self.K, mask=mask.copy())
        pose_cw = pose_from_Rt(rotation, translation.reshape(3))

        P1 = self.K @ np.hstack([np.eye(3), np.zeros((3, 1))])
        P2 = self.K @ pose_cw[:3, :]
        X = cv2.triangulatePoints(P1, P2, p1.T, p2.T)
        w = X[3]
        finite = np.abs(w) > 1e-12
        points = np.zeros((len(idx1), 3), dtype=np.float64)
        points[finite] = (X[:3, finite] / w[finite]).T

        good = finite & (pose_mask.reshape(-1) > 0) & self._check_points(points, p1, p2, pose_cw)

        parallax_ok = self._enough_parallax(points[good], pose_cw)
        n_good = int(good.sum())
        if n_good < self.min_triangulated or not parallax_ok:
            log.debug(f"Two view geometry rejected, {n_good=} {parallax_ok=}")
            return None

        points_3d = np.zeros((len(self.reference_keypoints), 3), dtype=np.float64)
        triangulated = np.zeros(len(self.reference_keypoints), dtype=bool)
        points_3d[idx1] = points
        triangulated[idx1] = good
        return TwoViewInitialization(pose_cw=pose_cw, points_3d=points_3d, triangulated=triangulated)

    def _check_points(self, points: WorldCoords3D, p1: PxCoords2d, p2: PxCoords2d, pose_cw: CameraPoseSE3):
        th2 = 4 * self.sigma ** 2

        z1 = points[:, 2]
        pc2 = points @ pose_cw[:3, :3].T + pose_cw[:3, 3]
        z2 = pc2[:, 2]
        in_front = (z1 > 0) & (z2 > 0)

        safe_z1 = np.where(in_front, z1, 1.)
        safe_z2 = np.where(in_front, z2, 1.)
        fx, fy, cx, cy = self.K[0, 0], self.K[1, 1], self.K[0, 2], self.K[1, 2]
        err1 = (fx * points[:, 0] / safe_z1 + cx - p1[:, 0]) ** 2 + (fy * points[:, 1] / safe_z1 + cy - p1[:, 1]) ** 2
        err2 = (fx * pc2[:, 0] / safe_z2 + cx - p2[:, 0]) ** 2 + (fy * pc2[:, 1] / safe_z2 + cy - p2[:, 1]) ** 2

        return in_front & (err1 < th2) & (err2 < th2) & np.all(np.isfinite(points), axis=1)

    def _enough_parallax(self, points: WorldCoords3D, pose_cw: CameraPoseSE3) -> bool:
        if len(points) == 0:
            return False
        center2 = -pose_cw[:3, :3].T @ pose_cw[:3, 3]
        ray1 = points
        ray2 = points - center2
        cos_parallax = (ray1 * ray2).sum(axis=1) / (np.linalg.norm(ray1, axis=1) * np.linalg.norm(ray2, axis=1))
        parallax_deg = np.degrees(np.arccos(np.clip(cos_parallax, -1., 1.)))
        parallax_deg = np.sort(parallax_deg)[::-1]   # largest first, we look at the 50th largest
        return bool(parallax_deg[min(50, len(parallax_deg) - 1)] >= self.min_parallax_deg)

""" Perspective-n-point RANSAC used for relocalization. Iterations are handed out in small batches
so that several candidate keyframes can be tried in an interleaved way. """
import logging
from typing import List, Optional, Tuple

import attr
import cv2
import numpy as np

from utils.custom_types import Array
from dwslam.frame import Frame
from dwslam.landmark import Landmark
from dwslam.poses import pose_from_Rt
from dwslam.types import CameraPoseSE3, PxCoords2d, SlotIndices, WorldCoords3D

log = logging.getLogger(__name__)


def solve_pnp(
    points_3d: WorldCoords3D,
    points_2d: PxCoords2d,
    K: Array['3,3', np.float64],
    flags: int = cv2.SOLVEPNP_EPNP,
) -> Optional[CameraPoseSE3]:
    """ Tcw from 2d-3d correspondences of undistorted keypoints, None if OpenCV gives up """
    try:
        ok, rvec, tvec = cv2.solvePnP(
            np.ascontiguousarray(points_3d, dtype=np.float64).reshape(-1, 1, 3),
            np.ascontiguousarray(points_2d, dtype=np.float64).reshape(-1, 1, 2),
            K,
            None,
            flags=flags,
        )
    except cv2.error:
        return None

    if not ok or not np.all(np.isfinite(rvec)) or not np.all(np.isfinite(tvec)):
        return None

    rotation, _ = cv2.Rodrigues(rvec)
    return pose_from_Rt(rotation, tvec.reshape(3))


@attr.define
class PnPRansacResult:
    pose: Optional[CameraPoseSE3]
    no_more: bool
    inliers: Array['N', bool]     # per frame slot
    n_inliers: int


@attr.define
class PnPSolver:
    """ RANSAC over minimal 4 point sets, a hypothesis with enough support is refined with EPnP
    on all of its inliers and returned as soon as the refinement keeps enough of them. """
    frame: Frame
    slots: SlotIndices
    points_3d: WorldCoords3D
    points_2d: PxCoords2d
    max_errors: Array['N', np.float64]     # squared pixel error allowed per correspondence

    probability: float = 0.99
    min_inliers: int = 8
    max_iterations: int = 300
    min_set: int = 4
    epsilon: float = 0.4
    th2: float = 5.991
    seed: int = 0

    n_iterations_done: int = 0
    ransac_min_inliers: int = 0
    ransac_max_iterations: int = 0
    best_pose: Optional[CameraPoseSE3] = None
    best_inliers: Optional[Array['N', bool]] = None
    rng: np.random.Generator = attr.ib(default=None, repr=False)

    @classmethod
    def from_matches(cls, frame: Frame, matches: List[Optional[Landmark]]) -> 'PnPSolver':
        slots = np.array([
            slot for slot, landmark in enumerate(matches)
            if landmark is not None and not landmark.is_bad
        ], dtype=np.int64)
        points_3d = np.array([matches[slot].get_world_pos() for slot in slots], dtype=np.float64).reshape(-1, 3)
        points_2d = frame.keypoints[slots].reshape(-1, 2)
        sigma2 = frame.pyramid.level_sigma2[frame.octaves[slots]]

        solver = cls(frame=frame, slots=slots, points_3d=points_3d, points_2d=points_2d, max_errors=sigma2)
        solver.set_ransac_parameters()
        return solver

    @property
    def n_correspondences(self) -> int:
        return len(self.slots)

    def set_ransac_parameters(
        self,
        probability: float = 0.99,
        min_inliers: int = 8,
        max_iterations: int = 300,
        min_set: int = 4,
        epsilon: float = 0.4,
        th2: float = 5.991,
    ):
        self.probability = probability
        self.min_inliers = min_inliers
        self.max_iterations = max_iterations
        self.min_set = min_set
        self.epsilon = epsilon
        self.th2 = th2

        n = self.n_correspondences
        self.ransac_min_inliers = int(max(n * epsilon, min_inliers, min_set))
        ransac_epsilon = self.ransac_min_inliers / n if n > 0 else 1.

        if self.ransac_min_inliers >= n or ransac_epsilon >= 1.:
            n_iterations = 1
        else:
            n_iterations = int(np.ceil(np.log(1 - probability) / np.log(1 - ransac_epsilon ** min_set)))
        self.ransac_max_iterations = max(1, min(n_iterations, max_iterations))

        self.max_errors = self.frame.pyramid.level_sigma2[self.frame.octaves[self.slots]] * th2
        self.n_iterations_done = 0
        self.best_pose = None
        self.best_inliers = None
        self.rng = np.random.default_rng(self.seed)

    def _count_inliers(self, pose: CameraPoseSE3) -> Array['N', bool]:
        pc = self.points_3d @ pose[:3, :3].T + pose[:3, 3]
        in_front = pc[:, 2] > 0.
        z = np.where(in_front, pc[:, 2], 1.)
        cam = self.frame.cam
        u = cam.fx * pc[:, 0] / z + cam.cx
        v = cam.fy * pc[:, 1] / z + cam.cy
        err2 = (u - self.points_2d[:, 0]) ** 2 + (v - self.points_2d[:, 1]) ** 2
        return in_front & (err2 < self.max_errors)

    def _to_frame_inliers(self, correspondence_inliers: Array['N', bool]) -> Array['N', bool]:
        out = np.zeros(self.frame.n_features, dtype=bool)
        out[self.slots[correspondence_inliers]] = True
        return out

    def _refine(self, inliers: Array['N', bool]) -> Tuple[Optional[CameraPoseSE3], Array['N', bool]]:
        pose = solve_pnp(self.points_3d[inliers], self.points_2d[inliers], self.frame.cam.K)
        if pose is None:
            return None, np.zeros(self.n_correspondences, dtype=bool)
        return pose, self._count_inliers(pose)

    def iterate(self, n_iterations: int) -> PnPRansacResult:
        """ Run at most n_iterations more hypotheses. no_more says the overall budget is exhausted. """
        no_inliers = np.zeros(self.frame.n_features, dtype=bool)

        if self.n_correspondences < self.ransac_min_inliers or self.n_correspondences < self.min_set:
            return PnPRansacResult(pose=None, no_more=True, inliers=no_inliers, n_inliers=0)

        K = self.frame.cam.K
        n_current = 0
        while self.n_iterations_done < self.ransac_max_iterations and n_current < n_iterations:
            n_current += 1
            self.n_iterations_done += 1

            sample = self.rng.choice(self.n_correspondences, size=self.min_set, replace=False)
            flags = cv2.SOLVEPNP_AP3P if self.min_set == 4 else cv2.SOLVEPNP_EPNP
            pose = solve_pnp(self.points_3d[sample], self.points_2d[sample], K, flags=flags)
            if pose is None:
                continue

            inliers = self._count_inliers(pose)
            n_inliers = int(inliers.sum())
            if n_inliers < self.ransac_min_inliers:
                continue

            if self.best_inliers is None or n_inliers > int(self.best_inliers.sum()):
                self.best_pose = pose
                self.best_inliers = inliers

            refined_pose, refined_inliers = self._refine(inliers)
            n_refined = int(refined_inliers.sum())
            if refined_pose is not None and n_refined > self.ransac_min_inliers:
                return PnPRansacResult(
                    pose=refined_pose,
                    no_more=self.n_iterations_done >= self.ransac_max_iterations,
                    inliers=self._to_frame_inliers(refined_inliers),
                    n_inliers=n_refined,
                )

        if self.n_iterations_done >= self.ransac_max_iterations:
            if self.best_inliers is not None and int(self.best_inliers.sum()) >= self.ransac_min_inliers:
                return PnPRansacResult(
                    pose=self.best_pose,
                    no_more=True,
                    inliers=self._to_frame_inliers(self.best_inliers),
                    n_inliers=int(self.best_inliers.sum()),
                )
            return PnPRansacResult(pose=None, no_more=True, inliers=no_inliers, n_inliers=0)

        return PnPRansacResult(pose=None, no_more=False, inliers=no_inliers, n_inliers=0)

""" Pose refinement. The frame-only optimizer is a robust Gauss-Newton over the reprojection errors
of the landmarks bound in a frame, poses are perturbed on the left with the SE3 exponential. """
import logging
from typing import List, Optional, Protocol, Tuple

import attr
import numpy as np

from liegroups.numpy.se3 import SE3Matrix
from utils.custom_types import Array
from dwslam.frame import Frame
from dwslam.keyframe import KeyFrame
from dwslam.landmark import Landmark
from dwslam.map import Map
from dwslam.math import vec_hat
from dwslam.poses import correct_SE3_matrix_inplace
from dwslam.types import CameraPoseSE3, PxCoords2d, WorldCoords3D

log = logging.getLogger(__name__)

CHI2_MONO = 5.991   # chi2 with 2 dof at 95%

ErrorSe3PoseJacobian = Array['N,2,6', np.float64]


def reprojection_errors(
    pose_cw: CameraPoseSE3,
    points_w: WorldCoords3D,
    observations: PxCoords2d,
    fx: float,
    fy: float,
    cx: float,
    cy: float,
) -> Tuple[Array['N,2', np.float64], Array['N,3', np.float64]]:
    """ observed minus projected, plus the points in camera coordinates """
    pc = points_w @ pose_cw[:3, :3].T + pose_cw[:3, 3]
    z = pc[:, 2]
    safe_z = np.where(np.abs(z) < 1e-12, 1e-12, z)
    projected = np.column_stack([fx * pc[:, 0] / safe_z + cx, fy * pc[:, 1] / safe_z + cy])
    return observations - projected, pc


def reprojection_jacobians(pc: Array['N,3', np.float64], fx: float, fy: float) -> ErrorSe3PoseJacobian:
    """ d(error) / d(xi) for T <- exp(xi) T, xi = [rho, phi] as liegroups orders it """
    n = len(pc)
    inv_z = 1. / pc[:, 2]
    inv_z2 = inv_z * inv_z

    J_proj = np.zeros((n, 2, 3), dtype=np.float64)
    J_proj[:, 0, 0] = fx * inv_z
    J_proj[:, 0, 2] = -fx * pc[:, 0] * inv_z2
    J_proj[:, 1, 1] = fy * inv_z
    J_proj[:, 1, 2] = -fy * pc[:, 1] * inv_z2

    J_point = np.zeros((n, 3, 6), dtype=np.float64)
    J_point[:, :, :3] = np.eye(3)
    J_point[:, :, 3:] = -np.array([vec_hat(p) for p in pc])

    return -J_proj @ J_point


@attr.define
class FrameOnlyPoseOptimizer:
    """ Refines the pose of one frame with its landmarks fixed, classifying bindings into inliers and outliers.
    Returns the inlier count, outlier flags end up in frame.outliers. """
    n_rounds: int = 4
    iterations_per_round: int = 10
    chi2_threshold: float = CHI2_MONO
    robust_rounds: int = 2   # Huber kernel on in the first rounds only
    min_correspondences: int = 3

    def optimize(self, frame: Frame, map: Optional[Map] = None) -> int:
        slots = np.array([
            slot for slot, landmark in enumerate(frame.landmarks)
            if landmark is not None and not landmark.is_bad
        ], dtype=np.int64)

        if len(slots) < self.min_correspondences:
            return 0

        points_w = np.array([frame.landmarks[slot].get_world_pos() for slot in slots])
        observations = frame.keypoints[slots]
        inv_sigma2 = frame.pyramid.inv_level_sigma2[frame.octaves[slots]]
        cam = frame.cam
        huber_delta = np.sqrt(self.chi2_threshold)

        pose = frame.get_pose()
        outlier = np.zeros(len(slots), dtype=bool)

        for round_idx in range(self.n_rounds):
            for _ in range(self.iterations_per_round):
                active = ~outlier
                if active.sum() < self.min_correspondences:
                    break
                errors, pc = reprojection_errors(pose, points_w[active], observations[active], cam.fx, cam.fy, cam.cx, cam.cy)
                if np.any(pc[:, 2] <= 0.):
                    # points behind the camera have no useful gradient, take them out for this iteration
                    keep = pc[:, 2] > 0.
                    errors, pc = errors[keep], pc[keep]
                    info = inv_sigma2[active][keep]
                else:
                    info = inv_sigma2[active]
                if len(pc) < self.min_correspondences:
                    break

                weights = info.copy()
                if round_idx < self.robust_rounds:
                    chi = np.sqrt((errors ** 2).sum(axis=1) * info)
                    huber = np.where(chi <= huber_delta, 1., huber_delta / np.maximum(chi, 1e-12))
                    weights *= huber

                J = reprojection_jacobians(pc, cam.fx, cam.fy)
                H = np.einsum('n,nij,nik->jk', weights, J, J)
                b = -np.einsum('n,nij,ni->j', weights, J, errors)
                try:
                    dx = np.linalg.solve(H + 1e-9 * np.eye(6), b)
                except np.linalg.LinAlgError:
                    log.debug("Singular normal equations in pose optimization")
                    break

                pose = correct_SE3_matrix_inplace(SE3Matrix.exp(dx).as_matrix() @ pose)
                if np.linalg.norm(dx) < 1e-10:
                    break

            errors, pc = reprojection_errors(pose, points_w, observations, cam.fx, cam.fy, cam.cx, cam.cy)
            chi2 = (errors ** 2).sum(axis=1) * inv_sigma2
            outlier = (chi2 > self.chi2_threshold) | (pc[:, 2] <= 0.)

            if (~outlier).sum() < 10:
                break

        frame.set_pose(pose)
        frame.outliers[slots] = outlier
        return int((~outlier).sum())


class IWindowedOptimizer(Protocol):
    def optimize(
        self,
        map: Map,
        spatial_window: List[KeyFrame],
        reference_landmarks: List[Landmark],
        temporal_window: List[Frame],
        current_frame: Frame,
        last_frame: Optional[Frame],
        imu=None,
    ) -> int:
        """ Refines poses (and positions) in place, returns the number of bad observations of the current frame """
        ...


@attr.define
class CurrentFrameWindowedOptimizer:
    """ Stand-in for the joint double window optimizer: refines the current frame against the reference landmarks
    of the window and reports how many of its bindings turned out bad. Window poses and landmarks stay fixed. """
    pose_optimizer: FrameOnlyPoseOptimizer = attr.Factory(FrameOnlyPoseOptimizer)

    def optimize(
        self,
        map: Map,
        spatial_window: List[KeyFrame],
        reference_landmarks: List[Landmark],
        temporal_window: List[Frame],
        current_frame: Frame,
        last_frame: Optional[Frame],
        imu=None,
    ) -> int:
        n_bound = sum(1 for landmark in current_frame.landmarks if landmark is not None and not landmark.is_bad)
        n_good = self.pose_optimizer.optimize(current_frame, map)
        if n_bound < self.pose_optimizer.min_correspondences:
            return 0
        return n_bound - n_good

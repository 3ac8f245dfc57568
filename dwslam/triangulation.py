""" New landmarks from correspondences between a fresh keyframe and a neighbouring view.

Every candidate goes through the same gates, in this order:
    - the feature grid of the keyframe (one new landmark per cell)
    - ray parallax (near zero or negative parallax is rejected, unless the stereo disparity is large enough)
    - linear triangulation itself (homogeneous coordinate must not vanish)
    - positive depth in both views
    - reprojection error in both views, scaled by the octave variance of the observation
    - scale consistency of the distances of the point from both camera centers
Rejections are tallied per reason, they never propagate.
"""
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import attr
import numpy as np
import pandas as pd

from utils.enum_utils import StrEnum
from dwslam.cam import CameraIntrinsics, px_2d_to_cam_coords_3d_homo
from dwslam.frame import Frame
from dwslam.keyframe import KeyFrame
from dwslam.landmark import Landmark
from dwslam.map import Map
from dwslam.math import cos_between, vec_hat
from dwslam.transforms import camera_center
from dwslam.types import CameraPoseSE3, FundamentalMatrix, QuadMatches, Vector3d

log = logging.getLogger(__name__)


class RejectReason(StrEnum):
    FULL_CELL = 'full_cell'
    COS_RAY = 'cos_ray'
    SVD0 = 'svd0'
    PDOP = 'pdop'
    NEG_Z = 'neg_z'
    REPROJ = 'reproj'
    DIST_ZERO = 'dist_zero'
    DIST_RATIO = 'dist_ratio'


@attr.define
class TriangulationStats:
    n_candidates: int = 0
    n_accepted: int = 0
    rejected: Dict[RejectReason, int] = attr.Factory(lambda: {reason: 0 for reason in RejectReason})

    def reject(self, reason: RejectReason):
        self.rejected[reason] += 1

    def n_rejected(self) -> int:
        return sum(self.rejected.values())

    def to_df(self) -> pd.DataFrame:
        return pd.DataFrame({
            'reason': [str(reason) for reason in self.rejected],
            'count': list(self.rejected.values()),
        })

    def histogram(self) -> List[int]:
        return [self.rejected[reason] for reason in RejectReason]


@attr.define
class TriangulationGates:
    max_cos_rays: float = 0.9998
    min_disparity: float = 1.0
    reproj_th2: float = 5.991
    cell_size: int = 30


def linear_triangulation(normalized_obs: Sequence[Vector3d], poses_cw: Sequence[CameraPoseSE3]) -> Optional[Vector3d]:
    """ DLT over any number of views, normalized_obs are (x/z, y/z, 1) in each camera. None if the solution is at infinity. """
    rows = []
    for xn, pose in zip(normalized_obs, poses_cw):
        P = pose[:3, :]
        rows.append(xn[0] * P[2] - P[0])
        rows.append(xn[1] * P[2] - P[1])
    A = np.array(rows, dtype=np.float64)

    _, _, vt = np.linalg.svd(A)
    x_h = vt[-1]
    if x_h[3] == 0.:
        return None
    return x_h[:3] / x_h[3]


def _reprojection_error2(point_w: Vector3d, pose_cw: CameraPoseSE3, cam: CameraIntrinsics, uv: np.ndarray) -> Tuple[float, float]:
    """ depth and squared pixel error """
    pc = pose_cw[:3, :3] @ point_w + pose_cw[:3, 3]
    z = pc[2]
    if z <= 0.:
        return float(z), np.inf
    u = cam.fx * pc[0] / z + cam.cx
    v = cam.fy * pc[1] / z + cam.cy
    return float(z), float((u - uv[0]) ** 2 + (v - uv[1]) ** 2)


def _gate_point(
    point_w: Optional[Vector3d],
    frame1: Frame,
    slot1: int,
    frame2: Frame,
    slot2: int,
    gates: TriangulationGates,
    scale_consistent: Callable[[float, float], bool],
) -> Optional[RejectReason]:
    """ The gates following the triangulation itself, None means the point is accepted """
    if point_w is None:
        return RejectReason.SVD0

    pose1 = frame1.pose
    pose2 = frame2.pose
    z1 = pose1[2, :3] @ point_w + pose1[2, 3]
    if z1 <= 0.:
        return RejectReason.NEG_Z
    z2 = pose2[2, :3] @ point_w + pose2[2, 3]
    if z2 <= 0.:
        return RejectReason.NEG_Z

    _, err1 = _reprojection_error2(point_w, pose1, frame1.cam, frame1.keypoints[slot1])
    if err1 > gates.reproj_th2 * frame1.sigma2(slot1):
        return RejectReason.REPROJ
    _, err2 = _reprojection_error2(point_w, pose2, frame2.cam, frame2.keypoints[slot2])
    if err2 > gates.reproj_th2 * frame2.sigma2(slot2):
        return RejectReason.REPROJ

    dist1 = float(np.linalg.norm(point_w - camera_center(pose1)))
    dist2 = float(np.linalg.norm(point_w - camera_center(pose2)))
    if dist1 == 0. or dist2 == 0.:
        return RejectReason.DIST_ZERO
    if not scale_consistent(dist1, dist2):
        return RejectReason.DIST_RATIO

    return None


def _finalize_landmark(map: Map, point_w: Vector3d, keyframe: KeyFrame, slot: int) -> Landmark:
    landmark = map.create_landmark(point_w, keyframe, slot)
    return landmark


def triangulate_quad_matches(
    map: Map,
    anchor: KeyFrame,
    other: Frame,
    quad_matches: QuadMatches,
    gates: TriangulationGates,
    anchor_is_previous: bool = True,
) -> TriangulationStats:
    """ Four view (two stereo pairs) triangulation of quad matches. The anchor keyframe owns the feature grid
    and the new landmarks, `other` gets the binding too and, if it is a keyframe, the observation.
    quad_matches are (previous slot, current slot), anchor_is_previous says which side is the anchor. """
    stats = TriangulationStats()
    if anchor.stereo is None or other.stereo is None:
        log.warning("Quad match triangulation needs stereo frames")
        return stats

    grid = anchor.make_feature_grid(gates.cell_size)
    ratio_factor = 1.5 * anchor.pyramid.scale_factor

    def scale_consistent(dist1: float, dist2: float) -> bool:
        ratio = dist1 / dist2
        return not (ratio * ratio_factor < 1. or ratio > ratio_factor)

    pose1, pose3 = anchor.pose, other.pose
    pose2, pose4 = anchor.get_right_pose(), other.get_right_pose()
    R_rel = pose1[:3, :3] @ pose3[:3, :3].T

    for prev_slot, cur_slot in np.asarray(quad_matches, dtype=np.int64).reshape(-1, 2):
        slot1, slot3 = (prev_slot, cur_slot) if anchor_is_previous else (cur_slot, prev_slot)
        if anchor.landmarks[slot1] is not None or other.landmarks[slot3] is not None:
            continue
        stats.n_candidates += 1

        u1, v1 = anchor.keypoints[slot1]
        eligible, col, row = grid.is_point_eligible(u1, v1)
        if not eligible:
            stats.reject(RejectReason.FULL_CELL)
            continue

        u2 = anchor.right_u[slot1]
        u3, v3 = other.keypoints[slot3]
        u4 = other.right_u[slot3]
        if np.isnan(u2) or np.isnan(u4):
            stats.reject(RejectReason.PDOP)
            continue

        xn1 = px_2d_to_cam_coords_3d_homo(np.array([u1, v1]), anchor.cam)[0]
        xn3 = px_2d_to_cam_coords_3d_homo(np.array([u3, v3]), other.cam)[0]
        ray3 = R_rel @ xn3
        cos_parallax = cos_between(xn1, ray3)
        if (cos_parallax < 0 or cos_parallax > gates.max_cos_rays) and (u1 - u2 < gates.min_disparity):
            stats.reject(RejectReason.COS_RAY)
            continue

        xn2 = px_2d_to_cam_coords_3d_homo(np.array([u2, v1]), anchor.stereo.right)[0]
        xn4 = px_2d_to_cam_coords_3d_homo(np.array([u4, v3]), other.stereo.right)[0]
        point_w = linear_triangulation([xn1, xn2, xn3, xn4], [pose1, pose2, pose3, pose4])

        reason = _gate_point(point_w, anchor, slot1, other, slot3, gates, scale_consistent)
        if reason is not None:
            stats.reject(reason)
            continue

        landmark = _finalize_landmark(map, point_w, anchor, int(slot1))
        if isinstance(other, KeyFrame):
            landmark.add_observation(other, int(slot3))
            other.add_landmark(landmark, int(slot3))
        else:
            other.bind_landmark(int(slot3), landmark)
        landmark.update_normal_and_depth()
        landmark.compute_distinctive_descriptor()
        grid.add_landmark(col, row, int(slot1))
        stats.n_accepted += 1

    log.debug(f"Created {stats.n_accepted} landmarks from {len(quad_matches)} quad matches")
    if stats.n_accepted < 6:
        log.debug(f"Rejected quad matches {dict(zip([str(r) for r in RejectReason], stats.histogram()))}")
    return stats


def compute_F12(keyframe1: Frame, keyframe2: Frame) -> FundamentalMatrix:
    """ x1^T F12 x2 = 0 for pixel coordinates x1 in keyframe1 and x2 in keyframe2 """
    R1w, t1w = keyframe1.pose[:3, :3], keyframe1.pose[:3, 3]
    R2w, t2w = keyframe2.pose[:3, :3], keyframe2.pose[:3, 3]

    R12 = R1w @ R2w.T
    t12 = -R12 @ t2w + t1w

    K1 = keyframe1.cam.K
    K2 = keyframe2.cam.K
    return np.linalg.inv(K1).T @ vec_hat(t12) @ R12 @ np.linalg.inv(K2)


def triangulate_with_keyframe(
    map: Map,
    current_keyframe: KeyFrame,
    other_keyframe: KeyFrame,
    matcher,
    gates: TriangulationGates,
    min_baseline_to_depth: float = 0.002,
) -> TriangulationStats:
    """ Two view triangulation between the newest keyframe and (typically) the one before it,
    on epipolar constrained descriptor matches of features that have no landmark yet. """
    stats = TriangulationStats()

    center1 = current_keyframe.get_camera_center()
    center2 = other_keyframe.get_camera_center()
    baseline = float(np.linalg.norm(center2 - center1))
    median_depth = other_keyframe.compute_scene_median_depth(2)
    if median_depth > 0 and baseline / median_depth < min_baseline_to_depth:
        log.warning(f"Too small baseline between keyframes {baseline=:.4f} {median_depth=:.4f}")

    F12 = compute_F12(current_keyframe, other_keyframe)
    pairs = matcher.search_for_triangulation(current_keyframe, other_keyframe, F12)

    grid = current_keyframe.make_feature_grid(gates.cell_size)
    pose1, pose2 = current_keyframe.pose, other_keyframe.pose

    for slot1, slot2 in pairs:
        stats.n_candidates += 1
        u1, v1 = current_keyframe.keypoints[slot1]
        eligible, col, row = grid.is_point_eligible(u1, v1)
        if not eligible:
            stats.reject(RejectReason.FULL_CELL)
            continue

        xn1 = px_2d_to_cam_coords_3d_homo(current_keyframe.keypoints[slot1], current_keyframe.cam)[0]
        xn2 = px_2d_to_cam_coords_3d_homo(other_keyframe.keypoints[slot2], other_keyframe.cam)[0]
        ray1 = pose1[:3, :3].T @ xn1
        ray2 = pose2[:3, :3].T @ xn2
        cos_parallax = cos_between(ray1, ray2)
        if cos_parallax < 0 or cos_parallax > gates.max_cos_rays:
            stats.reject(RejectReason.COS_RAY)
            continue

        ratio_octave = current_keyframe.pyramid.scale(current_keyframe.octaves[slot1]) / \
            other_keyframe.pyramid.scale(other_keyframe.octaves[slot2])

        def scale_consistent(dist1: float, dist2: float) -> bool:
            ratio = dist1 / dist2
            return not (ratio * 2. < ratio_octave or ratio > ratio_octave * 2.)

        point_w = linear_triangulation([xn1, xn2], [pose1, pose2])
        reason = _gate_point(point_w, current_keyframe, slot1, other_keyframe, slot2, gates, scale_consistent)
        if reason is not None:
            stats.reject(reason)
            continue

        landmark = _finalize_landmark(map, point_w, current_keyframe, slot1)
        landmark.add_observation(other_keyframe, slot2)
        other_keyframe.add_landmark(landmark, slot2)
        landmark.compute_distinctive_descriptor()
        landmark.update_normal_and_depth()
        grid.add_landmark(col, row, slot1)
        stats.n_accepted += 1

    log.debug(f"Created {stats.n_accepted} landmarks in keyframe {current_keyframe.keyframe_id} out of {len(pairs)} matches")
    return stats

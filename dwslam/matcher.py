""" Descriptor + geometry guided correspondence search between frames, keyframes and landmarks.
All searches bind into / fill per-slot landmark lists and return how many correspondences they made. """
import logging
from typing import List, Optional, Set, Tuple

import attr
import cv2
import numpy as np

from utils.custom_types import BinaryFeature
from dwslam.cam import project_cam_coords
from dwslam.features import TH_HIGH, TH_LOW, best_and_second_best, hamming_distance
from dwslam.frame import Frame
from dwslam.keyframe import KeyFrame
from dwslam.landmark import Landmark
from dwslam.transforms import world_to_cam
from dwslam.types import FundamentalMatrix, PxCoords2d

log = logging.getLogger(__name__)

# chi2 with one degree of freedom at 95%, for the point to epipolar line distance
EPIPOLAR_CHI2 = 3.84


def _descriptor_distances(descriptor: BinaryFeature, frame: Frame, slots: np.ndarray) -> np.ndarray:
    if len(slots) == 0:
        return np.zeros(0, dtype=np.int32)
    return hamming_distance(descriptor[None, :], frame.descriptors[slots])


@attr.define
class OrbMatcher:
    nn_ratio: float = 0.6
    feature_matcher: cv2.BFMatcher = attr.ib(factory=lambda: cv2.BFMatcher(cv2.NORM_HAMMING), repr=False)

    @classmethod
    def build(cls, nn_ratio: float = 0.6):
        return cls(nn_ratio=nn_ratio, feature_matcher=cv2.BFMatcher(cv2.NORM_HAMMING))

    def _pick(self, descriptor: BinaryFeature, frame: Frame, slots: np.ndarray, max_distance: int) -> Tuple[int, int]:
        """ Best slot among candidates passing distance and ratio tests, -1 if none. Also returns its distance. """
        dists = _descriptor_distances(descriptor, frame, slots)
        best_idx, best_dist, second_dist = best_and_second_best(dists)
        if best_idx < 0 or best_dist > max_distance:
            return -1, best_dist
        if best_dist > self.nn_ratio * second_dist:
            return -1, best_dist
        return int(slots[best_idx]), best_dist

    def search_for_initialization(
        self,
        initial_frame: Frame,
        current_frame: Frame,
        prev_matched: PxCoords2d,
        window_size: float = 100.,
    ) -> Tuple[int, np.ndarray]:
        """ Finest-octave features of the initial frame against those of the current frame,
        around where each was last matched. Returns the count and initial slot -> current slot (-1 if none).
        prev_matched is updated in place with the positions matched this time. """
        matches12 = np.full(initial_frame.n_features, -1, dtype=np.int64)
        matched_dist = np.full(current_frame.n_features, np.iinfo(np.int32).max, dtype=np.int64)
        matches21 = np.full(current_frame.n_features, -1, dtype=np.int64)

        for i1 in np.flatnonzero(initial_frame.octaves == 0):
            x, y = prev_matched[i1]
            candidates = current_frame.get_features_in_area(x, y, window_size, 0, 0)
            if len(candidates) == 0:
                continue

            dists = _descriptor_distances(initial_frame.descriptors[i1], current_frame, candidates)
            best_idx, best_dist, second_dist = best_and_second_best(dists)
            if best_idx < 0 or best_dist > TH_LOW:
                continue
            if best_dist >= self.nn_ratio * second_dist:
                continue

            i2 = int(candidates[best_idx])
            if best_dist >= matched_dist[i2]:
                continue
            if matches21[i2] >= 0:
                matches12[matches21[i2]] = -1
            matches12[i1] = i2
            matches21[i2] = i1
            matched_dist[i2] = best_dist

        for i1 in np.flatnonzero(matches12 >= 0):
            prev_matched[i1] = current_frame.keypoints[matches12[i1]]

        return int((matches12 >= 0).sum()), matches12

    def window_search(
        self,
        last_frame: Frame,
        current_frame: Frame,
        window_size: float,
        min_octave: int = 0,
    ) -> Tuple[int, List[Optional[Landmark]]]:
        """ Look for the landmarks of the last frame around their old pixel positions, no pose needed """
        matches: List[Optional[Landmark]] = [None] * current_frame.n_features
        matched_dist = np.full(current_frame.n_features, np.iinfo(np.int32).max, dtype=np.int64)

        for slot, landmark in last_frame.tracked_landmarks():
            x, y = last_frame.keypoints[slot]
            candidates = current_frame.get_features_in_area(x, y, window_size, min_level=min_octave)
            best, best_dist = self._pick(last_frame.descriptors[slot], current_frame, candidates, TH_HIGH)
            if best < 0 or best_dist >= matched_dist[best]:
                continue
            matches[best] = landmark
            matched_dist[best] = best_dist

        return sum(m is not None for m in matches), matches

    def search_by_projection_from_frame(
        self,
        last_frame: Frame,
        current_frame: Frame,
        radius: float,
        matches: List[Optional[Landmark]],
    ) -> int:
        """ Project the landmarks of the last frame with the current pose estimate and fill the free slots
        of `matches`. Pass current_frame.landmarks to bind directly. """
        already = {id(m) for m in matches if m is not None}
        taken = np.array([m is not None for m in matches], dtype=bool)
        n = 0

        for slot, landmark in last_frame.tracked_landmarks():
            if id(landmark) in already:
                continue
            pc = world_to_cam(landmark.get_world_pos(), current_frame.pose)[0]
            if pc[2] <= 0.:
                continue
            u, v = project_cam_coords(pc, current_frame.cam)[0]
            if not current_frame.cam.is_in_image(u, v):
                continue

            octave = int(last_frame.octaves[slot])
            scaled_radius = radius * current_frame.pyramid.scale(octave)
            candidates = current_frame.get_features_in_area(u, v, scaled_radius, max(octave - 1, 0), octave + 1)
            candidates = candidates[~taken[candidates]]
            best, _ = self._pick(last_frame.descriptors[slot], current_frame, candidates, TH_HIGH)
            if best < 0:
                continue

            matches[best] = landmark
            taken[best] = True
            already.add(id(landmark))
            n += 1

        return n

    def search_by_projection_local(self, frame: Frame, landmarks: List[Landmark], th: float = 1.) -> int:
        """ Reference landmarks whose projection caches were filled by Frame.is_in_frustum """
        n = 0
        use_stereo = frame.right_u is not None

        for landmark in landmarks:
            if not landmark.track_in_view or landmark.is_bad:
                continue
            if landmark.last_frame_seen == frame.id:
                continue

            level = landmark.track_scale_level
            radius = (2.5 if landmark.track_view_cos > 0.998 else 4.0) * th * frame.pyramid.scale(level)
            candidates = frame.get_features_in_area(
                landmark.track_proj_x, landmark.track_proj_y, radius, max(level - 1, 0), level
            )
            free = np.array([frame.landmarks[c] is None for c in candidates], dtype=bool)
            candidates = candidates[free] if len(candidates) else candidates

            if use_stereo and not np.isnan(landmark.track_proj_xr) and len(candidates):
                right_u = frame.right_u[candidates]
                stereo_ok = np.isnan(right_u) | (np.abs(right_u - landmark.track_proj_xr) <= radius)
                candidates = candidates[stereo_ok]

            if landmark.descriptor is None:
                continue
            best, _ = self._pick(landmark.descriptor, frame, candidates, TH_HIGH)
            if best < 0:
                continue

            frame.bind_landmark(best, landmark)
            n += 1

        return n

    def search_by_projection_keyframe(
        self,
        frame: Frame,
        keyframe: KeyFrame,
        already_found: Set[Landmark],
        th: float,
        orb_dist: int,
    ) -> int:
        """ Relocalization helper: project the landmarks of the candidate keyframe we have not matched yet """
        n = 0
        center = frame.get_camera_center()

        for landmark in keyframe.get_landmark_matches():
            if landmark is None or landmark.is_bad or landmark in already_found:
                continue

            position = landmark.get_world_pos()
            pc = world_to_cam(position, frame.pose)[0]
            if pc[2] <= 0.:
                continue
            u, v = project_cam_coords(pc, frame.cam)[0]
            if not frame.cam.is_in_image(u, v):
                continue

            distance = float(np.linalg.norm(position - center))
            if distance < landmark.get_min_distance_invariance() or distance > landmark.get_max_distance_invariance():
                continue

            level = landmark.predict_scale(distance, frame.pyramid)
            candidates = frame.get_features_in_area(u, v, th * frame.pyramid.scale(level), max(level - 1, 0), level + 1)
            candidates = np.array([c for c in candidates if frame.landmarks[c] is None], dtype=np.int64)
            if landmark.descriptor is None or len(candidates) == 0:
                continue

            dists = _descriptor_distances(landmark.descriptor, frame, candidates)
            best_idx = int(np.argmin(dists))
            if dists[best_idx] > orb_dist:
                continue

            frame.bind_landmark(int(candidates[best_idx]), landmark)
            already_found.add(landmark)
            n += 1

        return n

    def search_for_triangulation(
        self,
        keyframe1: KeyFrame,
        keyframe2: KeyFrame,
        F12: FundamentalMatrix,
    ) -> List[Tuple[int, int]]:
        """ Pairs (slot in keyframe1, slot in keyframe2) of features without landmarks that agree on the descriptor
        and lie close to each other's epipolar line """
        free1 = np.array([i for i, m in enumerate(keyframe1.landmarks) if m is None], dtype=np.int64)
        free2 = np.array([i for i, m in enumerate(keyframe2.landmarks) if m is None], dtype=np.int64)
        if len(free1) == 0 or len(free2) == 0:
            return []

        dists = hamming_distance(keyframe1.descriptors[free1][:, None, :], keyframe2.descriptors[free2][None, :, :])

        x1 = np.column_stack([keyframe1.keypoints[free1], np.ones(len(free1))])
        x2 = np.column_stack([keyframe2.keypoints[free2], np.ones(len(free2))])
        lines = x1 @ F12                                   # epipolar lines in image 2, one per row
        numerators = lines @ x2.T                          # (N1, N2)
        norms = lines[:, 0] ** 2 + lines[:, 1] ** 2
        epipolar_dist2 = numerators ** 2 / np.maximum(norms, 1e-12)[:, None]
        sigma2 = keyframe2.pyramid.level_sigma2[keyframe2.octaves[free2]]
        geometry_ok = epipolar_dist2 < EPIPOLAR_CHI2 * sigma2[None, :]

        masked = np.where(geometry_ok & (dists <= TH_LOW), dists, np.iinfo(np.int32).max)
        best2 = masked.argmin(axis=1)
        best_dist = masked[np.arange(len(free1)), best2]

        pairs = {}
        for i, (j, dist) in enumerate(zip(best2, best_dist)):
            if dist > TH_LOW:
                continue
            slot2 = int(free2[j])
            if slot2 not in pairs or dist < pairs[slot2][1]:
                pairs[slot2] = (int(free1[i]), int(dist))

        return sorted((slot1, slot2) for slot2, (slot1, _) in pairs.items())

    def search_by_bow(self, keyframe: KeyFrame, frame: Frame) -> Tuple[int, List[Optional[Landmark]]]:
        """ Descriptor-only matching of the keyframe's landmarks to the frame's features """
        matches: List[Optional[Landmark]] = [None] * frame.n_features
        keyframe_landmarks = keyframe.get_landmark_matches()
        slots = np.array([
            i for i, m in enumerate(keyframe_landmarks) if m is not None and not m.is_bad
        ], dtype=np.int64)
        if len(slots) == 0 or frame.n_features < 2:
            return 0, matches

        knn = self.feature_matcher.knnMatch(keyframe.descriptors[slots], frame.descriptors, k=2)
        matched_dist = np.full(frame.n_features, np.iinfo(np.int32).max, dtype=np.int64)
        for pair in knn:
            if len(pair) < 2:
                continue
            best, second = pair
            if best.distance > TH_LOW or best.distance >= self.nn_ratio * second.distance:
                continue
            if best.distance >= matched_dist[best.trainIdx]:
                continue
            matches[best.trainIdx] = keyframe_landmarks[slots[best.queryIdx]]
            matched_dist[best.trainIdx] = best.distance

        return sum(m is not None for m in matches), matches

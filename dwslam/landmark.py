import threading
from typing import Dict, Optional, TYPE_CHECKING

import attr
import numpy as np

from utils.custom_types import BinaryFeature
from dwslam.features import ScalePyramid, pairwise_hamming_distance
from dwslam.math import normalize_vector
from dwslam.types import Vector3d

if TYPE_CHECKING:
    from dwslam.keyframe import KeyFrame
    from dwslam.map import Map


@attr.define(eq=False)
class Landmark:
    """ A triangulated 3d point (MapPoint) with its keyframe observations.

    Observations are stored as keyframe id -> feature slot and resolved through the Map,
    so a keyframe culled by a back end simply stops resolving instead of dangling.
    """
    id: int
    position: Vector3d
    map: 'Map' = attr.ib(repr=False)
    reference_keyframe_id: int = -1
    first_frame_id: int = -1

    observations: Dict[int, int] = attr.Factory(dict)
    descriptor: Optional[BinaryFeature] = attr.ib(default=None, repr=False)
    normal: Vector3d = attr.ib(factory=lambda: np.zeros(3, dtype=np.float64), repr=False)
    min_distance: float = 0.0
    max_distance: float = 0.0
    n_visible: int = 1
    n_found: int = 1

    # first-estimate (fixed linearization point) of the position, set once
    first_estimate: Optional[Vector3d] = attr.ib(default=None, repr=False)

    # per-cycle bookkeeping of the tracker
    reference_epoch: int = -1   # id of the frame that last put us into its reference set
    n_observations_in_double_window: int = 0
    last_frame_seen: int = -1

    # projection cache filled by Frame.is_in_frustum, consumed by the matcher
    track_in_view: bool = False
    track_proj_x: float = 0.0
    track_proj_y: float = 0.0
    track_proj_xr: float = float('nan')
    track_scale_level: int = 0
    track_view_cos: float = 1.0

    _bad: bool = attr.ib(default=False, init=False)
    _lock: threading.RLock = attr.ib(factory=threading.RLock, init=False, repr=False)

    @property
    def is_bad(self) -> bool:
        return self._bad

    @property
    def has_first_estimate(self) -> bool:
        return self.first_estimate is not None

    def get_world_pos(self) -> Vector3d:
        with self._lock:
            return self.position.copy()

    def set_world_pos(self, position: Vector3d):
        with self._lock:
            self.position = np.asarray(position, dtype=np.float64).reshape(3).copy()

    def add_observation(self, keyframe: 'KeyFrame', slot: int):
        with self._lock:
            self.observations[keyframe.keyframe_id] = int(slot)

    def erase_observation(self, keyframe: 'KeyFrame'):
        with self._lock:
            self.observations.pop(keyframe.keyframe_id, None)
            if self.reference_keyframe_id == keyframe.keyframe_id and self.observations:
                self.reference_keyframe_id = next(iter(self.observations))
            no_observers_left = len(self.observations) == 0

        if no_observers_left:
            self.set_bad_flag()

    def get_observations(self) -> Dict['KeyFrame', int]:
        """ Resolved observations, skipping keyframes the map no longer holds """
        with self._lock:
            observations = dict(self.observations)

        out = {}
        for keyframe_id, slot in observations.items():
            keyframe = self.map.get_keyframe(keyframe_id)
            if keyframe is not None:
                out[keyframe] = slot
        return out

    def n_observations(self) -> int:
        with self._lock:
            return len(self.observations)

    def is_in_keyframe(self, keyframe: 'KeyFrame') -> bool:
        with self._lock:
            return keyframe.keyframe_id in self.observations

    def set_bad_flag(self):
        """ Terminal: once bad, always bad. Unbinds us from every observing keyframe and leaves the map. """
        with self._lock:
            if self._bad:
                return
            self._bad = True
            observations = dict(self.observations)
            self.observations.clear()

        for keyframe_id, slot in observations.items():
            keyframe = self.map.get_keyframe(keyframe_id)
            if keyframe is not None:
                keyframe.erase_landmark_match(slot)

        self.map.erase_landmark(self)

    def set_first_estimate(self):
        with self._lock:
            if self.first_estimate is None:
                self.first_estimate = self.position.copy()

    def increase_visible(self, n: int = 1):
        self.n_visible += n

    def increase_found(self, n: int = 1):
        self.n_found += n

    def get_found_ratio(self) -> float:
        return self.n_found / self.n_visible

    def compute_distinctive_descriptor(self):
        """ Pick the observed descriptor with the least median distance to all the others. """
        observations = self.get_observations()
        if not observations:
            return

        descriptors = np.array([
            keyframe.detections.descriptors[slot]
            for keyframe, slot in observations.items()
        ], dtype=np.uint8)

        if len(descriptors) == 1:
            best = 0
        else:
            dists = pairwise_hamming_distance(descriptors, descriptors)
            best = int(np.argmin(np.median(dists, axis=1)))

        with self._lock:
            self.descriptor = descriptors[best].copy()

    def update_normal_and_depth(self):
        observations = self.get_observations()
        if self._bad or not observations:
            return

        with self._lock:
            position = self.position.copy()
            reference_keyframe = self.map.get_keyframe(self.reference_keyframe_id)

        if reference_keyframe is None or reference_keyframe not in observations:
            reference_keyframe = next(iter(observations))

        normals = []
        for keyframe in observations:
            ray = position - keyframe.get_camera_center()
            normals.append(normalize_vector(ray))

        reference_center = reference_keyframe.get_camera_center()
        distance = float(np.linalg.norm(position - reference_center))
        octave = int(reference_keyframe.detections.octaves[observations[reference_keyframe]])
        pyramid = reference_keyframe.pyramid
        level_scale_factor = pyramid.scale(octave)

        with self._lock:
            self.normal = np.mean(normals, axis=0)
            self.max_distance = distance * level_scale_factor
            self.min_distance = self.max_distance / pyramid.scale(pyramid.n_levels - 1)

    def get_min_distance_invariance(self) -> float:
        return 0.8 * self.min_distance

    def get_max_distance_invariance(self) -> float:
        return 1.2 * self.max_distance

    def predict_scale(self, distance: float, pyramid: ScalePyramid) -> int:
        if distance <= 0 or self.max_distance <= 0:
            return 0
        ratio = self.max_distance / distance
        level = int(np.ceil(np.log(ratio) / pyramid.log_scale_factor))
        return int(np.clip(level, 0, pyramid.n_levels - 1))
